"""
Log source adapters for blockchain event monitoring.

Provides one query interface over two transports:
- HTTP (pull): request/response only, new blocks are discovered by polling
- WebSocket (push): persistent connection with eth_subscribe log delivery
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlparse

from web3 import AsyncWeb3, Web3
from web3.providers import AsyncHTTPProvider, WebSocketProvider
from web3.types import LogReceipt
from web3.utils.subscriptions import LogsSubscription, LogsSubscriptionContext

PUSH_SCHEMES = ("ws", "wss")


def is_push_url(url: str) -> bool:
    """Check whether an RPC URL selects the push (WebSocket) transport."""
    return urlparse(url).scheme.lower() in PUSH_SCHEMES


def convert_to_http_url(ws_url: str) -> str:
    """Convert WebSocket RPC URL to HTTP URL."""
    if ws_url.startswith("wss://"):
        return ws_url.replace("wss://", "https://", 1)
    elif ws_url.startswith("ws://"):
        return ws_url.replace("ws://", "http://", 1)
    return ws_url


def sort_logs(logs: list[Any]) -> list[Any]:
    """Order logs by (blockNumber, logIndex), the ledger-native order."""
    return sorted(
        logs,
        key=lambda log: (int(log.get("blockNumber") or 0), int(log.get("logIndex") or 0)),
    )


class HttpLogSource:
    """
    Log source over HTTP RPC.

    Subscriptions are synthesized: ``new_blocks`` polls the head and yields
    every new block number it observes.
    """

    supports_push = False

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        topic: str,
        request_timeout: int = 30
    ) -> None:
        """
        Initialize the HTTP log source.

        Args:
            rpc_url: HTTP RPC endpoint URL
            contract_address: Address of the contract to monitor
            topic: Event signature topic (0x-prefixed hex)
            request_timeout: Per-request timeout in seconds
        """
        self.rpc_url = rpc_url
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.topic = topic

        self.w3 = AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def connect(self) -> None:
        """Nothing to establish for request/response transport."""
        self.logger.debug(f"Using HTTP transport: {self.rpc_url}")

    async def get_block_number(self) -> int:
        return await self.w3.eth.block_number

    async def get_logs(self, from_block: int, to_block: int) -> list[LogReceipt]:
        """
        Query matching logs in an inclusive block range.

        Args:
            from_block: First block of the range
            to_block: Last block of the range

        Returns:
            Logs in ascending (block, log index) order
        """
        logs = await self.w3.eth.get_logs({
            "address": self.contract_address,
            "topics": [self.topic],
            "fromBlock": from_block,
            "toBlock": to_block,
        })
        return sort_logs(list(logs))

    async def new_blocks(self, interval: float) -> AsyncIterator[int]:
        """
        Yield new block heads as they are observed.

        Polling errors are logged and polling continues.

        Args:
            interval: Seconds between head polls
        """
        last_seen: int | None = None
        while True:
            try:
                head = await self.get_block_number()
                if last_seen is None or head > last_seen:
                    last_seen = head
                    yield head
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error polling block number: {e}")
            await asyncio.sleep(interval)

    async def close(self) -> None:
        """Release the HTTP session."""
        provider = self.w3.provider
        if hasattr(provider, "disconnect"):
            await provider.disconnect()


class WebSocketLogSource:
    """
    Log source over a persistent WebSocket connection.

    Features:
    - eth_getLogs queries over the same connection
    - eth_subscribe("logs") push delivery into a bounded queue
    """

    supports_push = True

    def __init__(
        self,
        websocket_url: str,
        contract_address: str,
        topic: str,
        request_timeout: int = 60,
        queue_size: int = 10000
    ) -> None:
        """
        Initialize the WebSocket log source.

        Args:
            websocket_url: WebSocket RPC endpoint URL
            contract_address: Address of the contract to monitor
            topic: Event signature topic (0x-prefixed hex)
            request_timeout: Per-request timeout in seconds
            queue_size: Provider-side subscription buffer size
        """
        self.rpc_url = websocket_url
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.topic = topic
        self.request_timeout = request_timeout
        self.queue_size = queue_size

        self.w3: AsyncWeb3 | None = None
        self._queue: asyncio.Queue | None = None

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def connect(self) -> None:
        """Open the persistent connection."""
        self.logger.info(f"Connecting to WebSocket: {self.rpc_url}")
        self.w3 = await AsyncWeb3(
            WebSocketProvider(
                self.rpc_url,
                request_timeout=self.request_timeout,
                subscription_response_queue_size=self.queue_size,
            )
        )
        self.logger.info("WebSocket connected successfully")

    def _require_connection(self) -> AsyncWeb3:
        if self.w3 is None:
            raise ConnectionError("WebSocket log source is not connected")
        return self.w3

    async def get_block_number(self) -> int:
        return await self._require_connection().eth.block_number

    async def get_logs(self, from_block: int, to_block: int) -> list[LogReceipt]:
        logs = await self._require_connection().eth.get_logs({
            "address": self.contract_address,
            "topics": [self.topic],
            "fromBlock": from_block,
            "toBlock": to_block,
        })
        return sort_logs(list(logs))

    async def subscribe(self, queue: asyncio.Queue) -> None:
        """
        Install the standing logs subscription and deliver into ``queue``.

        Runs until the connection closes or the task is cancelled. A full
        queue applies backpressure to the subscription handler.

        Args:
            queue: Bounded queue consumed by the live tail
        """
        w3 = self._require_connection()
        self._queue = queue

        logs_subscription = LogsSubscription(
            label=f"{self.topic[:10]}-subscription",
            address=self.contract_address,
            topics=[self.topic],
            handler=self._log_handler,
        )

        self.logger.info(f"Subscribing to logs on {self.contract_address}")
        self.logger.info(f"Event topic: {self.topic}")

        await w3.subscription_manager.subscribe([logs_subscription])
        await w3.subscription_manager.handle_subscriptions()

    async def _log_handler(self, handler_context: LogsSubscriptionContext) -> None:
        """
        Handler for LogsSubscription events.

        Args:
            handler_context: Context containing the log receipt
        """
        if self._queue is not None:
            await self._queue.put(handler_context.result)

    async def close(self) -> None:
        """Unsubscribe and disconnect."""
        self.logger.info("Closing WebSocket log source...")
        try:
            if self.w3 is not None:
                await self.w3.subscription_manager.unsubscribe_all()
                await self.w3.provider.disconnect()
        except Exception as e:
            self.logger.warning(f"Error during cleanup: {e}")
        finally:
            self.w3 = None
            self._queue = None


def create_log_source(
    rpc_url: str,
    contract_address: str,
    topic: str,
    websocket_url: str | None = None,
    request_timeout: int = 30
) -> HttpLogSource | WebSocketLogSource:
    """
    Pick the transport from the URL scheme.

    A dedicated WebSocket URL wins; otherwise a ws:// or wss:// RPC URL
    selects push and http:// or https:// selects pull.
    """
    chosen_url = websocket_url or rpc_url
    if is_push_url(chosen_url):
        return WebSocketLogSource(
            websocket_url=chosen_url,
            contract_address=contract_address,
            topic=topic,
            request_timeout=max(request_timeout, 60),
        )
    return HttpLogSource(
        rpc_url=chosen_url,
        contract_address=contract_address,
        topic=topic,
        request_timeout=request_timeout,
    )
