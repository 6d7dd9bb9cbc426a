"""
Relay Agent implementation.

This module contains the main relay service that wires the log source,
decoder, dispatch gate and destination submitter for one role, and manages
the lifecycle of the scanning task.
"""

import asyncio
import logging

from .config import RelayConfig
from .destination_submitter import DestinationSubmitter
from .dispatch_gate import DispatchGate
from .event_decoder import EventDecoder, event_topic
from .models import RelaySession, SourceEvent
from .scanner import LogScanner
from .utils.contract_utility import ContractUtility
from .utils.log_source import HttpLogSource, WebSocketLogSource, create_log_source
from .utils.rofl_utility import RoflUtility

logger = logging.getLogger(__name__)

SOURCE_CONTRACT_NAME = "SourceEndpoint"


class RelayAgent:
    """
    Main relay service for a single role.

    This class focuses on coordination and lifecycle management, delegating
    scanning to the LogScanner and idempotent submission to the DispatchGate.
    """

    STATUS_LOG_INTERVAL = 30  # seconds

    def __init__(self, config: RelayConfig):
        """
        Initialize the Relay Agent.

        Args:
            config: Relay configuration
        """
        self.config = config
        self.local_mode = config.local_mode
        self.running = False

        self.source_abi = ContractUtility.get_contract_abi(SOURCE_CONTRACT_NAME)
        self.topic = event_topic(self.source_abi, config.source_chain.source_event)

        self._init_utilities()

        self.source: HttpLogSource | WebSocketLogSource = create_log_source(
            rpc_url=config.source_chain.rpc_url,
            contract_address=config.source_chain.contract_address,
            topic=self.topic,
            websocket_url=config.source_chain.websocket_url,
            request_timeout=config.monitoring.request_timeout,
        )

        # Built once the source is connected
        self.session: RelaySession | None = None
        self.decoder: EventDecoder | None = None
        self.gate: DispatchGate | None = None
        self.scanner: LogScanner | None = None

        # Async coordination
        self.shutdown_event = asyncio.Event()

    def _init_utilities(self) -> None:
        """Initialize destination-side utilities."""
        self.contract_util = ContractUtility(
            rpc_url=self.config.destination_chain.rpc_url,
            secret=self.config.private_key if self.local_mode else "",
            request_timeout=self.config.monitoring.request_timeout,
        )

        # Initialize ROFL utility if not in local mode
        self.rofl_util = None if self.local_mode else RoflUtility(self.config.rofl_appd_url)

        self.submitter = DestinationSubmitter(
            contract_util=self.contract_util,
            rofl_util=self.rofl_util,
            contract_address=self.config.destination_chain.contract_address,
            contract_name=self.config.destination_contract_name,
            confirmation_timeout=self.config.monitoring.confirmation_timeout,
        )

        logger.info(f"Initialized DestinationSubmitter in {'local' if self.local_mode else 'ROFL'} mode")

    @classmethod
    def from_env(cls, local_mode: bool = False) -> "RelayAgent":
        """
        Create a RelayAgent instance from environment variables.

        Args:
            local_mode: Sign transactions with PRIVATE_KEY instead of ROFL

        Returns:
            Configured RelayAgent instance

        Raises:
            ValueError: If required environment variables are missing
        """
        config = RelayConfig.from_env(local_mode=local_mode)
        config.log_config()
        return cls(config)

    async def resolve_local_chain_id(self) -> int | None:
        """
        Destination chain id used when deriving identifiers from PacketVerified.

        Uses LOCAL_CHAIN_ID when configured, otherwise reads ``eid()`` from
        the source endpoint. Other events do not need it.
        """
        if self.config.source_chain.source_event is not SourceEvent.PACKET_VERIFIED:
            return self.config.source_chain.local_chain_id
        if self.config.source_chain.local_chain_id is not None:
            return self.config.source_chain.local_chain_id

        endpoint = self.source.w3.eth.contract(
            address=self.config.source_chain.contract_address, abi=self.source_abi
        )
        local_chain_id = await endpoint.functions.eid().call()
        logger.info(f"Local chain id from endpoint eid(): {local_chain_id}")
        return local_chain_id

    async def initial_cursor(self) -> int:
        """START_BLOCK when configured, otherwise head minus the lookback window."""
        if self.config.monitoring.start_block is not None:
            return self.config.monitoring.start_block
        head = await self.source.get_block_number()
        return max(0, head - self.config.monitoring.lookback_blocks)

    async def init_scanning(self) -> None:
        """Connect the source and build the scanning pipeline."""
        logger.info("Initializing log scanning...")
        await self.source.connect()

        self.session = RelaySession(cursor=await self.initial_cursor())
        self.decoder = EventDecoder(
            source_event=self.config.source_chain.source_event,
            abi=self.source_abi,
            local_chain_id=await self.resolve_local_chain_id(),
        )
        self.gate = DispatchGate(
            session=self.session,
            submitter=self.submitter,
            already_done_pattern=self.config.already_done_pattern,
        )
        self.scanner = LogScanner(
            source=self.source,
            decoder=self.decoder,
            gate=self.gate,
            session=self.session,
            function_name=self.config.function_name,
            scan_range=self.config.monitoring.scan_range,
            poll_interval=self.config.monitoring.poll_interval,
            max_retries=self.config.monitoring.max_retries,
        )

        transport = "push" if self.source.supports_push else "pull"
        logger.info(f"Source contract: {self.config.source_chain.contract_address} ({transport})")
        logger.info(f"Scanning from block {self.session.cursor}")

    def get_stats(self) -> dict[str, int]:
        """Session counters merged with decoder metrics."""
        stats: dict[str, int] = {}
        if self.session:
            stats.update(self.session.get_stats())
        if self.decoder:
            stats.update(self.decoder.get_metrics())
        return stats

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.STATUS_LOG_INTERVAL)
            stats = self.get_stats()
            logger.info(
                f"Status: cursor={stats.get('cursor')}, "
                f"{stats.get('seen', 0)} seen, "
                f"{stats.get('submitted', 0)} submitted, "
                f"{stats.get('already_done', 0)} already done, "
                f"{stats.get('failures', 0)} failed, "
                f"{stats.get('decode_errors', 0)} undecodable"
            )

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """
        Check whether the critical tasks are still running.

        Returns:
            False if a critical task finished normally

        Raises:
            RuntimeError: If a critical task failed
        """
        for name, task in tasks.items():
            if task.done() and name != "status":  # status task can end normally
                if not task.cancelled() and (error := task.exception()) is not None:
                    raise RuntimeError(f"{name} task failed: {error}") from error
                logger.info(f"{name} task finished")
                return False
        return True

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Clean up all tasks and the log source."""
        if self.scanner:
            self.scanner.stop()

        for task in tasks.values():
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass  # Expected when cancelling

        await self.source.close()

    async def run(self) -> None:
        """Main event loop for the relay service."""
        self.running = True
        logger.info(f"Relay Agent starting as {self.config.role.value}...")

        tasks: dict[str, asyncio.Task] = {}
        try:
            await self.init_scanning()

            if not self.scanner:
                raise RuntimeError("Log scanner not properly initialized")

            tasks = {
                "scanner": asyncio.create_task(self.scanner.run()),
                "status": asyncio.create_task(self._periodic_status_logger()),
            }

            logger.info("Log scanning started, waiting for events...")

            # Wait until shutdown or task failure
            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass  # Continue running

                if not await self._check_task_health(tasks):
                    break

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            await self._cleanup_tasks(tasks)
            logger.info("Relay Agent stopped")

    def stop(self) -> None:
        """Stop the relay service."""
        self.running = False
        self.shutdown_event.set()
