#!/usr/bin/env python3
"""Dispatch gate for the Relay Agent.

Every decoded event, whether it came from backfill or the live tail, passes
through a single DispatchGate. The gate guarantees at most one confirmed
destination call per message identifier for the lifetime of the process,
and classifies destination failures into benign duplicates (the action was
already performed by someone else) and genuine failures (left retryable).
"""

import asyncio
import logging
import re
from typing import Protocol

from web3 import Web3

from .models import (
    DestinationCall,
    DispatchOutcome,
    DomainEvent,
    RelayRole,
    RelaySession,
    SendEvent,
    SourceEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_ALREADY_DONE_PATTERN = r"already\s+(verified|attested|executed|delivered|processed|done)"

# (role, source event) -> destination function
SUPPORTED_ACTIONS: dict[tuple[RelayRole, SourceEvent], str] = {
    (RelayRole.VERIFIER, SourceEvent.MESSAGE_QUEUED): "submitAttestation",
    (RelayRole.VERIFIER, SourceEvent.PACKET_SENT): "verify",
    (RelayRole.EXECUTOR, SourceEvent.PACKET_VERIFIED): "execute",
    (RelayRole.EXECUTOR, SourceEvent.MESSAGE_VERIFIED): "execute",
}


class CallSubmitter(Protocol):
    async def submit(self, call: DestinationCall) -> str: ...


def build_destination_call(function_name: str, message_id: str, event: DomainEvent) -> DestinationCall:
    """
    Build the role-specific destination call for a decoded event.

    Args:
        function_name: Destination function selected for the role
        message_id: Canonical identifier of the message
        event: The decoded event

    Returns:
        The call to hand to the submitter

    Raises:
        ValueError: If the function needs fields the event does not carry
    """
    match function_name:
        case "submitAttestation" | "execute":
            return DestinationCall(function_name, (Web3.to_bytes(hexstr=message_id),))
        case "verify":
            if not isinstance(event, SendEvent):
                raise ValueError("verify() needs a send-type event")
            return DestinationCall(
                function_name,
                (event.origin, event.receiver, event.payload_hash),
            )
        case _:
            raise ValueError(f"Unsupported destination function: {function_name}")


def describe_error(error: BaseException) -> str:
    """Best-effort human readable text of a submission failure."""
    if isinstance(error, asyncio.TimeoutError):
        return "confirmation timed out"
    parts = [str(error)]
    message = getattr(error, "message", None)
    if message and message not in parts[0]:
        parts.append(str(message))
    return " ".join(part for part in parts if part) or type(error).__name__


class DispatchGate:
    """Deduplicates by identifier and invokes the destination action."""

    def __init__(
        self,
        session: RelaySession,
        submitter: CallSubmitter,
        already_done_pattern: str = DEFAULT_ALREADY_DONE_PATTERN
    ) -> None:
        """
        Initialize the dispatch gate.

        Args:
            session: Relay session holding the seen set
            submitter: Performs and confirms destination calls
            already_done_pattern: Regex matched (case-insensitive) against
                failure messages to detect benign duplicates
        """
        self.session = session
        self.submitter = submitter
        self.already_done_re = re.compile(already_done_pattern, re.IGNORECASE)

    def is_already_done(self, error: BaseException) -> bool:
        """Check whether a failure means someone else already did the action."""
        return bool(self.already_done_re.search(describe_error(error)))

    async def dispatch(self, message_id: str, call: DestinationCall) -> DispatchOutcome:
        """
        Perform ``call`` unless ``message_id`` was already dispatched.

        The identifier is only added to the seen set after the call is
        confirmed, or after the destination reports the action as already
        done. Genuine failures leave it unseen so a later re-scan retries.

        Args:
            message_id: Canonical message identifier
            call: Destination call to perform

        Returns:
            The classified outcome
        """
        session = self.session
        if message_id in session.seen:
            session.duplicates += 1
            logger.debug(f"Skipping already dispatched message {message_id}")
            return DispatchOutcome.DUPLICATE

        async with session.lock_for(message_id):
            # Re-check under the lock: a concurrent delivery may have won
            if message_id in session.seen:
                session.duplicates += 1
                logger.debug(f"Skipping already dispatched message {message_id}")
                return DispatchOutcome.DUPLICATE

            try:
                tx_ref = await self.submitter.submit(call)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self.is_already_done(e):
                    session.mark_seen(message_id)
                    session.already_done += 1
                    logger.info(
                        f"{call.function_name} for {message_id} already performed: "
                        f"{describe_error(e)}"
                    )
                    return DispatchOutcome.ALREADY_DONE

                session.failures += 1
                logger.error(
                    f"{call.function_name} failed for {message_id}: {describe_error(e)}"
                )
                return DispatchOutcome.FAILED

            session.mark_seen(message_id)
            session.submitted += 1
            logger.info(f"✓ {call.function_name} confirmed for {message_id} (tx: {tx_ref})")
            return DispatchOutcome.SUBMITTED
