"""
Canonical cross-chain message identifiers.

The identifier (guid) is keccak256 over the packed layout

    nonce    uint64   8 bytes, big-endian
    srcEid   uint32   4 bytes, big-endian
    sender   bytes32  address left-padded to 32 bytes
    dstEid   uint32   4 bytes, big-endian
    receiver bytes32  address left-padded to 32 bytes

A verifier and an executor derive it independently from different events
describing the same message, so the layout must not change.
"""

from typing import Any

from eth_utils import is_hex
from web3 import Web3

from .models import DomainEvent, SendEvent, StatusEvent

UINT32_MAX = 2**32 - 1
UINT64_MAX = 2**64 - 1


def address_to_bytes32(value: Any) -> bytes:
    """
    Left-pad an address (or pass through a 32-byte value).

    Args:
        value: 20-byte address as hex string or bytes, or a 32-byte value

    Returns:
        The 32-byte big-endian representation

    Raises:
        ValueError: If the value is neither 20 nor 32 bytes long
    """
    match value:
        case bytes() as raw:
            pass
        case str() as text if is_hex(text):
            raw = Web3.to_bytes(hexstr=text)
        case _:
            raise ValueError(f"Cannot convert {value!r} to bytes32")

    if len(raw) == 32:
        return raw
    if len(raw) == 20:
        return raw.rjust(32, b"\x00")
    raise ValueError(f"Expected a 20 or 32 byte value, got {len(raw)} bytes")


def _check_range(name: str, value: int, maximum: int) -> int:
    if not isinstance(value, int) or value < 0 or value > maximum:
        raise ValueError(f"{name} out of range: {value}")
    return value


def compute_guid(
    nonce: int,
    src_chain_id: int,
    sender: Any,
    dst_chain_id: int,
    receiver: Any,
) -> str:
    """
    Compute the message identifier for a send-type event.

    Args:
        nonce: Per-path nonce (uint64)
        src_chain_id: Origin chain id (uint32)
        sender: Origin application as address or bytes32
        dst_chain_id: Destination chain id (uint32)
        receiver: Destination application as address or bytes32

    Returns:
        0x-prefixed lowercase hex digest
    """
    digest = Web3.solidity_keccak(
        ["uint64", "uint32", "bytes32", "uint32", "bytes32"],
        [
            _check_range("nonce", nonce, UINT64_MAX),
            _check_range("src_chain_id", src_chain_id, UINT32_MAX),
            address_to_bytes32(sender),
            _check_range("dst_chain_id", dst_chain_id, UINT32_MAX),
            address_to_bytes32(receiver),
        ],
    )
    return Web3.to_hex(digest)


def normalize_message_id(value: Any) -> str:
    """Render a carried bytes32 identifier as 0x-prefixed lowercase hex."""
    raw = value if isinstance(value, bytes) else Web3.to_bytes(hexstr=value)
    if len(raw) != 32:
        raise ValueError(f"Message id must be 32 bytes, got {len(raw)}")
    return Web3.to_hex(raw)


def derive_message_id(event: DomainEvent) -> str:
    """
    Return the canonical identifier of a decoded event.

    Send-type events are hashed from their origin fields unless the event
    carries its own identifier, which the source contract assigned and the
    destination expects. Status-type events are returned verbatim.
    """
    match event:
        case StatusEvent(message_id=message_id):
            return message_id
        case SendEvent(carried_id=str(carried_id)):
            return carried_id
        case SendEvent():
            return compute_guid(
                event.nonce,
                event.src_chain_id,
                event.sender,
                event.dst_chain_id,
                event.receiver,
            )
        case _:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")
