#!/usr/bin/env python3
"""Event decoding module for the Relay Agent.

This module turns raw source-chain logs into typed domain events for the
configured source event. Logs arrive in two formats: fully formatted
``LogReceipt`` mappings from ``eth_getLogs`` and subscription payloads whose
quantities may still be hex strings. Both are normalized before ABI
decoding.
"""

import logging
from collections.abc import Mapping
from typing import Any

from eth_utils import event_abi_to_log_topic
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import MismatchedABI

from .message_id import address_to_bytes32, compute_guid, normalize_message_id
from .models import DomainEvent, SendEvent, SourceEvent, StatusEvent

# Get logger for this module
logger = logging.getLogger(__name__)


class EventDecodeError(Exception):
    """Raised when a log cannot be turned into a domain event."""


def parse_quantity(value: Any) -> int:
    """Parse a quantity that may be an int, hex string or bytes."""
    match value:
        case int():
            return value
        case bytes():
            return int.from_bytes(value, byteorder="big")
        case str() if value.startswith("0x"):
            return int(value, 16)
        case str():
            return int(value)
        case None:
            return 0
        case _:
            raise EventDecodeError(f"Unexpected quantity type: {type(value).__name__}")


def _tuple_field(value: Any, name: str, index: int) -> Any:
    """Read one component of a decoded ABI tuple.

    Compatibility shim: depending on the web3 version and ABI revision,
    structs come back either as mappings/named tuples or as plain tuples.
    Named access is tried first, positional access second.
    """
    if isinstance(value, Mapping) and name in value:
        return value[name]
    if hasattr(value, name):
        return getattr(value, name)
    try:
        return value[index]
    except (IndexError, KeyError, TypeError) as e:
        raise EventDecodeError(f"Tuple has no field {name!r} or index {index}") from e


def normalize_log(raw_log: Any) -> dict[str, Any]:
    """
    Normalize a raw log into the shape web3's event decoder expects.

    Args:
        raw_log: Log mapping from a query or a subscription

    Returns:
        Plain dict with int quantities and HexBytes topics/data
    """
    if not hasattr(raw_log, "get"):
        raise EventDecodeError(f"Unsupported log format: {type(raw_log).__name__}")

    topics = raw_log.get("topics") or []
    return {
        "address": raw_log.get("address"),
        "blockHash": HexBytes(raw_log.get("blockHash") or b""),
        "blockNumber": parse_quantity(raw_log.get("blockNumber")),
        "data": HexBytes(raw_log.get("data") or b""),
        "logIndex": parse_quantity(raw_log.get("logIndex")),
        "topics": [HexBytes(topic) for topic in topics],
        "transactionHash": HexBytes(raw_log.get("transactionHash") or b""),
        "transactionIndex": parse_quantity(raw_log.get("transactionIndex")),
        "removed": bool(raw_log.get("removed", False)),
    }


def find_event_abi(abi: list[dict[str, Any]], source_event: SourceEvent) -> dict[str, Any]:
    """Return the ABI entry of ``source_event``.

    Raises:
        ValueError: If the event is missing from the ABI
    """
    for entry in abi:
        if entry.get("type") == "event" and entry.get("name") == source_event.value:
            return entry
    raise ValueError(f"Event {source_event.value} not found in contract ABI")


def event_topic(abi: list[dict[str, Any]], source_event: SourceEvent) -> str:
    """Topic0 (0x-prefixed) of ``source_event`` in ``abi``."""
    return Web3.to_hex(event_abi_to_log_topic(find_event_abi(abi, source_event)))


class EventDecoder:
    """Decodes source-chain logs into SendEvent or StatusEvent objects.

    This class is responsible for:
    - ABI-decoding the configured source event
    - Mapping each supported event onto the send or status shape
    - Flagging carried identifiers that differ from the packed layout
    - Maintaining metrics on decoded and rejected logs
    """

    def __init__(
        self,
        source_event: SourceEvent,
        abi: list[dict[str, Any]],
        local_chain_id: int | None = None
    ) -> None:
        """Initialize the EventDecoder.

        Args:
            source_event: The event this decoder accepts
            abi: ABI of the source contract
            local_chain_id: Destination chain id used for PacketVerified

        Raises:
            ValueError: If the event is missing from the ABI or required
                context for it is missing
        """
        self.source_event = source_event
        self.local_chain_id = local_chain_id

        self.event_abi: dict[str, Any] = find_event_abi(abi, source_event)
        self.topic: str = event_topic(abi, source_event)

        contract = Web3().eth.contract(abi=abi)
        self.event_obj = getattr(contract.events, source_event.value)()

        if source_event is SourceEvent.PACKET_VERIFIED and local_chain_id is None:
            raise ValueError("PacketVerified decoding requires the local chain id")

        # Metrics tracking
        self.events_decoded = 0
        self.events_invalid = 0

    def decode(self, raw_log: Any) -> DomainEvent:
        """Decode one raw log.

        Args:
            raw_log: Log record from the log source

        Returns:
            The decoded domain event

        Raises:
            EventDecodeError: If the log is malformed, carries the wrong
                topic, or is internally inconsistent
        """
        try:
            log = normalize_log(raw_log)
            try:
                event_data = self.event_obj.process_log(log)
            except MismatchedABI as e:
                raise EventDecodeError(f"Log does not match {self.source_event.value}: {e}") from e

            args: Mapping[str, Any] = event_data["args"]
            tx_hash = Web3.to_hex(log["transactionHash"])

            match self.source_event:
                case SourceEvent.MESSAGE_QUEUED:
                    event = self._from_message_queued(args, log, tx_hash)
                case SourceEvent.PACKET_SENT:
                    event = self._from_packet_sent(args, log, tx_hash)
                case SourceEvent.PACKET_VERIFIED:
                    event = self._from_packet_verified(args, log, tx_hash)
                case SourceEvent.MESSAGE_VERIFIED:
                    event = StatusEvent(
                        message_id=normalize_message_id(args["messageId"]),
                        submitter=args["submitter"],
                        block_number=log["blockNumber"],
                        transaction_hash=tx_hash,
                        log_index=log["logIndex"],
                    )
        except EventDecodeError:
            self.events_invalid += 1
            raise
        except Exception as e:
            self.events_invalid += 1
            raise EventDecodeError(f"Failed to decode {self.source_event.value} log: {e}") from e

        self.events_decoded += 1
        logger.debug(f"Decoded {event}")
        return event

    def _from_message_queued(
        self, args: Mapping[str, Any], log: dict[str, Any], tx_hash: str
    ) -> SendEvent:
        """Queuing events expose every origin field directly."""
        event = SendEvent(
            src_chain_id=args["srcChainId"],
            sender=address_to_bytes32(args["srcUa"]),
            nonce=args["nonce"],
            dst_chain_id=args["dstChainId"],
            receiver=args["dstUa"],
            payload_hash=bytes(args["payloadHash"]),
            block_number=log["blockNumber"],
            transaction_hash=tx_hash,
            log_index=log["logIndex"],
            carried_id=normalize_message_id(args["messageId"]),
        )

        packed = compute_guid(
            event.nonce, event.src_chain_id, event.sender, event.dst_chain_id, event.receiver
        )
        if packed != event.carried_id:
            logger.warning(
                f"Carried messageId {event.carried_id} differs from packed identifier "
                f"{packed}; using the carried one"
            )
        return event

    def _from_packet_sent(
        self, args: Mapping[str, Any], log: dict[str, Any], tx_hash: str
    ) -> SendEvent:
        """Send events carry the raw payload; its hash is computed here."""
        origin = args["origin"]
        return SendEvent(
            src_chain_id=_tuple_field(origin, "srcEid", 0),
            sender=address_to_bytes32(_tuple_field(origin, "sender", 1)),
            nonce=_tuple_field(origin, "nonce", 2),
            dst_chain_id=args["dstEid"],
            receiver=args["receiver"],
            payload_hash=bytes(Web3.keccak(args["message"])),
            block_number=log["blockNumber"],
            transaction_hash=tx_hash,
            log_index=log["logIndex"],
        )

    def _from_packet_verified(
        self, args: Mapping[str, Any], log: dict[str, Any], tx_hash: str
    ) -> SendEvent:
        """Verified events are emitted on the destination; dst is the local id."""
        origin = args["origin"]
        return SendEvent(
            src_chain_id=_tuple_field(origin, "srcEid", 0),
            sender=address_to_bytes32(_tuple_field(origin, "sender", 1)),
            nonce=_tuple_field(origin, "nonce", 2),
            dst_chain_id=self.local_chain_id,
            receiver=args["receiver"],
            payload_hash=bytes(args["payloadHash"]),
            block_number=log["blockNumber"],
            transaction_hash=tx_hash,
            log_index=log["logIndex"],
        )

    def get_metrics(self) -> dict[str, int]:
        """Get current decoding metrics.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "events_decoded": self.events_decoded,
            "events_invalid": self.events_invalid,
        }
