#!/usr/bin/env python3
"""Configuration management for the Relay Agent.

This module provides type-safe configuration dataclasses with validation
for the relay agent. Configuration is loaded from environment variables
with sensible defaults where appropriate.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

from .dispatch_gate import DEFAULT_ALREADY_DONE_PATTERN, SUPPORTED_ACTIONS
from .models import RelayRole, SourceEvent
from .utils.log_source import convert_to_http_url

# Get logger for this module
logger = logging.getLogger(__name__)

DEFAULT_SOURCE_EVENTS: dict[RelayRole, SourceEvent] = {
    RelayRole.VERIFIER: SourceEvent.MESSAGE_QUEUED,
    RelayRole.EXECUTOR: SourceEvent.PACKET_VERIFIED,
}

DESTINATION_CONTRACTS: dict[RelayRole, str] = {
    RelayRole.VERIFIER: "Verifier",
    RelayRole.EXECUTOR: "Executor",
}


def _checksum(address: str, label: str, env_name: str) -> str:
    """Validate an address and return its checksum form."""
    if not address:
        raise ValueError(f"{label} is required ({env_name})")
    if not Web3.is_address(address):
        raise ValueError(f"Invalid {label.lower()}: {address}")
    return Web3.to_checksum_address(address)


def _env_int(name: str, default: int | None = None) -> int | None:
    """Read an optional integer environment variable."""
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw, 0)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True, slots=True)
class SourceChainConfig:
    """Configuration for the chain the agent watches.

    Attributes:
        rpc_url: RPC endpoint (http, https, ws or wss)
        contract_address: Checksummed address of the event-emitting contract
        source_event: Event consumed from the contract
        websocket_url: Optional dedicated push endpoint
        local_chain_id: Destination id used to derive identifiers from
            PacketVerified (read from the contract's eid() when unset)
    """

    rpc_url: str
    contract_address: str
    source_event: SourceEvent
    websocket_url: str | None = None
    local_chain_id: int | None = None

    SUPPORTED_SCHEMES: ClassVar[tuple[str, ...]] = ('http', 'https', 'ws', 'wss')

    def __post_init__(self) -> None:
        """Validate source chain configuration."""
        if not self.rpc_url:
            raise ValueError("Source RPC URL is required (RPC_URL)")

        for url in (self.rpc_url, self.websocket_url):
            if url is None:
                continue
            scheme = urlparse(url).scheme
            if scheme not in self.SUPPORTED_SCHEMES:
                raise ValueError(
                    f"Invalid RPC URL scheme: {scheme}. "
                    "Expected http, https, ws, or wss"
                )

        if self.websocket_url and urlparse(self.websocket_url).scheme not in ('ws', 'wss'):
            raise ValueError(f"WS_RPC_URL must use ws or wss, got {self.websocket_url}")

        checksummed = _checksum(
            self.contract_address, "Source contract address", "SOURCE_CONTRACT_ADDRESS"
        )
        if checksummed != self.contract_address:
            # Use object.__setattr__ since dataclass is frozen
            object.__setattr__(self, 'contract_address', checksummed)

        if self.local_chain_id is not None and not 0 <= self.local_chain_id < 2**32:
            raise ValueError(f"Local chain id out of range: {self.local_chain_id}")


@dataclass(frozen=True, slots=True)
class DestinationChainConfig:
    """Configuration for the chain the agent writes to.

    Attributes:
        rpc_url: HTTP(S) RPC endpoint
        contract_address: Checksummed address of the verifier/executor contract
    """

    rpc_url: str
    contract_address: str

    def __post_init__(self) -> None:
        """Validate destination chain configuration."""
        if not self.rpc_url:
            raise ValueError("Destination RPC URL is required (DEST_RPC_URL)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https'):
            raise ValueError(
                f"Invalid destination RPC URL scheme: {parsed.scheme}. Expected http or https"
            )

        checksummed = _checksum(
            self.contract_address, "Destination contract address", "DEST_CONTRACT_ADDRESS"
        )
        if checksummed != self.contract_address:
            object.__setattr__(self, 'contract_address', checksummed)


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for scanning and dispatch."""
    start_block: int | None = None  # explicit start, else head - lookback
    lookback_blocks: int = 5000  # blocks to look back on startup
    scan_range: int = 2000  # max blocks per eth_getLogs query
    poll_interval_ms: int = 2000  # pull transport head polling
    confirmation_timeout: int = 120  # seconds to await a destination receipt
    request_timeout: int = 30  # HTTP request timeout in seconds
    max_retries: int = 5  # consecutive push subscription failures

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.start_block is not None and self.start_block < 0:
            raise ValueError(f"Start block must be non-negative, got {self.start_block}")

        if self.lookback_blocks < 0:
            raise ValueError(f"Lookback blocks must be non-negative, got {self.lookback_blocks}")

        if self.scan_range <= 0:
            raise ValueError(f"Scan range must be positive, got {self.scan_range}")
        if self.scan_range > 100_000:
            raise ValueError(f"Scan range too high (max 100000), got {self.scan_range}")

        if self.poll_interval_ms <= 0:
            raise ValueError(f"Poll interval must be positive, got {self.poll_interval_ms}")
        if self.poll_interval_ms > 300_000:
            raise ValueError(f"Poll interval too long (max 300000ms), got {self.poll_interval_ms}")

        if self.confirmation_timeout <= 0:
            raise ValueError(
                f"Confirmation timeout must be positive, got {self.confirmation_timeout}"
            )

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.max_retries < 1:
            raise ValueError(f"Max retries must be at least 1, got {self.max_retries}")

    @property
    def poll_interval(self) -> float:
        """Poll interval in seconds."""
        return self.poll_interval_ms / 1000


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Main configuration for the Relay Agent.

    Attributes:
        role: Relay role (verifier or executor)
        source_chain: Configuration for the watched chain
        destination_chain: Configuration for the chain receiving calls
        monitoring: Configuration for scanning and dispatch
        local_mode: Whether transactions are signed with a local key
        private_key: Signing key for local mode
        rofl_appd_url: ROFL appd socket path or URL (production mode)
        already_done_pattern: Regex for benign "already done" reverts
    """

    role: RelayRole
    source_chain: SourceChainConfig
    destination_chain: DestinationChainConfig
    monitoring: MonitoringConfig
    local_mode: bool = False
    private_key: str | None = None
    rofl_appd_url: str = ""
    already_done_pattern: str = DEFAULT_ALREADY_DONE_PATTERN

    def __post_init__(self) -> None:
        """Validate relay configuration."""
        if (self.role, self.source_chain.source_event) not in SUPPORTED_ACTIONS:
            raise ValueError(
                f"Role {self.role.value} cannot consume "
                f"{self.source_chain.source_event.value} events"
            )

        if self.local_mode and not self.private_key:
            raise ValueError("Local mode requires PRIVATE_KEY environment variable")

        if self.private_key:
            # Basic private key validation (should be 64 hex chars, optionally with 0x prefix)
            key = self.private_key.removeprefix('0x')

            if len(key) != 64:
                raise ValueError(
                    f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
                )

            try:
                int(key, 16)
            except ValueError:
                raise ValueError(
                    "Invalid private key format. Must be hexadecimal"
                ) from None

        try:
            re.compile(self.already_done_pattern)
        except re.error as e:
            raise ValueError(f"Invalid ALREADY_DONE_PATTERN: {e}") from None

    @property
    def function_name(self) -> str:
        """Destination function invoked for each message."""
        return SUPPORTED_ACTIONS[(self.role, self.source_chain.source_event)]

    @property
    def destination_contract_name(self) -> str:
        """ABI name of the destination contract."""
        return DESTINATION_CONTRACTS[self.role]

    @classmethod
    def from_env(cls, local_mode: bool = False) -> "RelayConfig":
        """Load configuration from environment variables.

        Args:
            local_mode: Whether to sign transactions with PRIVATE_KEY

        Returns:
            RelayConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        role_name = os.environ.get("RELAY_ROLE", "").strip().lower()
        if not role_name:
            raise ValueError(
                "RELAY_ROLE environment variable is required. "
                "Use 'verifier' or 'executor'."
            )
        try:
            role = RelayRole(role_name)
        except ValueError:
            raise ValueError(
                f"Unsupported RELAY_ROLE: {role_name}. Use 'verifier' or 'executor'."
            ) from None

        event_name = os.environ.get("SOURCE_EVENT", "")
        try:
            source_event = SourceEvent(event_name) if event_name else DEFAULT_SOURCE_EVENTS[role]
        except ValueError:
            supported = ", ".join(event.value for event in SourceEvent)
            raise ValueError(
                f"Unsupported SOURCE_EVENT: {event_name}. Supported events: {supported}"
            ) from None

        # Load source chain config
        rpc_url = os.environ.get("RPC_URL", "")
        if not rpc_url:
            raise ValueError(
                "RPC_URL environment variable is required. "
                "Example: http://127.0.0.1:8545"
            )

        source_contract = os.environ.get("SOURCE_CONTRACT_ADDRESS", "")
        if not source_contract:
            raise ValueError(
                "SOURCE_CONTRACT_ADDRESS environment variable is required. "
                "This should be the endpoint contract emitting the source events."
            )

        source_config = SourceChainConfig(
            rpc_url=rpc_url,
            contract_address=source_contract,
            source_event=source_event,
            websocket_url=os.environ.get("WS_RPC_URL") or None,
            local_chain_id=_env_int("LOCAL_CHAIN_ID"),
        )

        # Load destination chain config
        dest_contract = os.environ.get("DEST_CONTRACT_ADDRESS", "")
        if not dest_contract:
            raise ValueError(
                "DEST_CONTRACT_ADDRESS environment variable is required. "
                "This should be the verifier or executor contract address."
            )

        destination_config = DestinationChainConfig(
            rpc_url=os.environ.get("DEST_RPC_URL") or convert_to_http_url(rpc_url),
            contract_address=dest_contract,
        )

        # Load monitoring config
        monitoring_config = MonitoringConfig(
            start_block=_env_int("START_BLOCK"),
            lookback_blocks=_env_int("LOOKBACK_BLOCKS", 5000),
            scan_range=_env_int("SCAN_RANGE", 2000),
            poll_interval_ms=_env_int("POLL_INTERVAL_MS", 2000),
            confirmation_timeout=_env_int("CONFIRMATION_TIMEOUT", 120),
            request_timeout=_env_int("REQUEST_TIMEOUT", 30),
            max_retries=_env_int("MAX_RETRIES", 5),
        )

        private_key = os.environ.get("PRIVATE_KEY") if local_mode else None

        return cls(
            role=role,
            source_chain=source_config,
            destination_chain=destination_config,
            monitoring=monitoring_config,
            local_mode=local_mode,
            private_key=private_key,
            rofl_appd_url=os.environ.get("ROFL_APPD_URL", ""),
            already_done_pattern=os.environ.get("ALREADY_DONE_PATTERN") or DEFAULT_ALREADY_DONE_PATTERN,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Relay Agent Configuration")
        logger.info("=" * 60)

        logger.info(f"Role: {self.role.value} ({self.function_name})")

        logger.info("Source Chain:")
        logger.info(f"  RPC URL: {self.source_chain.rpc_url}")
        if self.source_chain.websocket_url:
            logger.info(f"  WebSocket URL: {self.source_chain.websocket_url}")
        logger.info(f"  Contract: {self.source_chain.contract_address}")
        logger.info(f"  Event: {self.source_chain.source_event.value}")
        if self.source_chain.local_chain_id is not None:
            logger.info(f"  Local Chain ID: {self.source_chain.local_chain_id}")

        logger.info("Destination Chain:")
        logger.info(f"  RPC URL: {self.destination_chain.rpc_url}")
        logger.info(f"  {self.destination_contract_name}: {self.destination_chain.contract_address}")

        logger.info("Monitoring Settings:")
        if self.monitoring.start_block is not None:
            logger.info(f"  Start Block: {self.monitoring.start_block}")
        else:
            logger.info(f"  Lookback Blocks: {self.monitoring.lookback_blocks}")
        logger.info(f"  Scan Range: {self.monitoring.scan_range} blocks")
        logger.info(f"  Poll Interval: {self.monitoring.poll_interval_ms} ms")
        logger.info(f"  Confirmation Timeout: {self.monitoring.confirmation_timeout} seconds")

        logger.info("Agent Settings:")
        logger.info(f"  Mode: {'LOCAL' if self.local_mode else 'ROFL'}")
        if self.local_mode:
            logger.info("  Private Key: [CONFIGURED]")

        logger.info("=" * 60)
