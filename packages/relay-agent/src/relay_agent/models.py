#!/usr/bin/env python3
"""Data models for the Relay Agent.

This module provides the immutable domain events produced by the decoder,
the destination call handed to the dispatch gate, and the mutable
per-role session state shared by the scanner and the gate.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from web3 import Web3


class RelayRole(Enum):
    """Role the agent plays between the two chains."""
    VERIFIER = "verifier"
    EXECUTOR = "executor"


class SourceEvent(Enum):
    """Source contract events the agent knows how to consume."""
    MESSAGE_QUEUED = "MessageQueued"
    PACKET_SENT = "PacketSent"
    PACKET_VERIFIED = "PacketVerified"
    MESSAGE_VERIFIED = "MessageVerified"


class DispatchOutcome(Enum):
    """Result of handing one message to the dispatch gate."""
    SUBMITTED = "submitted"
    ALREADY_DONE = "already_done"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class SendEvent:
    """A decoded event describing a cross-chain message by its origin fields.

    Attributes:
        src_chain_id: Origin chain (endpoint) id
        sender: Origin application, left-padded to 32 bytes
        nonce: Per-path message nonce
        dst_chain_id: Destination chain (endpoint) id
        receiver: Destination application address
        payload_hash: keccak256 of the message payload
        block_number: Block where the log was emitted
        transaction_hash: Transaction that emitted the log
        log_index: Index of the log in its block
        carried_id: Identifier carried by the event itself, if any
    """

    src_chain_id: int
    sender: bytes
    nonce: int
    dst_chain_id: int
    receiver: str
    payload_hash: bytes
    block_number: int
    transaction_hash: str
    log_index: int
    carried_id: str | None = None

    def __str__(self) -> str:
        """Human-readable string representation."""
        return (
            f"SendEvent(receiver={self.receiver[:8]}..., "
            f"src={self.src_chain_id}, dst={self.dst_chain_id}, "
            f"nonce={self.nonce}, block={self.block_number})"
        )

    @property
    def origin(self) -> tuple[int, bytes, int]:
        """Origin tuple in the (srcEid, sender, nonce) order contracts expect."""
        return (self.src_chain_id, self.sender, self.nonce)


@dataclass(frozen=True, slots=True)
class StatusEvent:
    """A decoded event that carries a bare message identifier."""

    message_id: str
    submitter: str
    block_number: int
    transaction_hash: str
    log_index: int

    def __str__(self) -> str:
        return (
            f"StatusEvent(id={self.message_id[:10]}..., "
            f"submitter={self.submitter[:8]}..., block={self.block_number})"
        )


DomainEvent = SendEvent | StatusEvent


@dataclass(frozen=True, slots=True)
class DestinationCall:
    """A state-mutating call on the destination contract."""

    function_name: str
    args: tuple[Any, ...]

    def __str__(self) -> str:
        rendered = ", ".join(
            Web3.to_hex(arg) if isinstance(arg, bytes) else str(arg)
            for arg in self.args
        )
        return f"{self.function_name}({rendered})"


@dataclass
class RelaySession:
    """Process-lifetime state of one relay role.

    The cursor is the next unscanned block and only ever moves forward.
    The seen set holds identifiers whose destination action is confirmed
    (or was already performed by someone else). Neither is persisted.
    """

    cursor: int
    seen: set[str] = field(default_factory=set)
    locks: dict[str, asyncio.Lock] = field(default_factory=dict)

    # Counters
    submitted: int = 0
    already_done: int = 0
    duplicates: int = 0
    failures: int = 0
    decode_errors: int = 0

    def advance(self, next_block: int) -> None:
        """Move the cursor forward; never backwards."""
        if next_block > self.cursor:
            self.cursor = next_block

    def lock_for(self, message_id: str) -> asyncio.Lock:
        """Return the lock guarding check-then-act for one identifier."""
        lock = self.locks.get(message_id)
        if lock is None:
            lock = asyncio.Lock()
            self.locks[message_id] = lock
        return lock

    def mark_seen(self, message_id: str) -> None:
        """Record a dispatched identifier and drop its lock.

        Dropping the lock is safe once the identifier is seen: waiters on the
        old lock re-check the seen set, and new callers never get past it.
        """
        self.seen.add(message_id)
        self.locks.pop(message_id, None)

    def get_stats(self) -> dict[str, int]:
        """
        Get current session statistics.

        Returns:
            Dictionary with current state metrics
        """
        return {
            "cursor": self.cursor,
            "seen": len(self.seen),
            "submitted": self.submitted,
            "already_done": self.already_done,
            "duplicates": self.duplicates,
            "failures": self.failures,
            "decode_errors": self.decode_errors,
        }
