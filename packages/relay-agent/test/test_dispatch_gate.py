#!/usr/bin/env python3
"""Unit tests for DispatchGate."""

import asyncio
import logging

import pytest
from web3 import Web3
from web3.exceptions import ContractLogicError

from relay_agent.dispatch_gate import DispatchGate, build_destination_call, describe_error
from relay_agent.models import DestinationCall, DispatchOutcome, SendEvent, StatusEvent

MESSAGE_ID = "0x" + "ab" * 32
CALL = DestinationCall("execute", (bytes.fromhex("ab" * 32),))


class TestDispatchGate:
    """Test suite for DispatchGate class."""

    @pytest.mark.asyncio
    async def test_submits_once_per_identifier(self, gate, session, submitter):
        first = await gate.dispatch(MESSAGE_ID, CALL)
        second = await gate.dispatch(MESSAGE_ID, CALL)

        assert first is DispatchOutcome.SUBMITTED
        assert second is DispatchOutcome.DUPLICATE
        submitter.submit.assert_called_once_with(CALL)
        assert MESSAGE_ID in session.seen
        assert session.submitted == 1
        assert session.duplicates == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_call_destination_once(self, gate, session, submitter):
        async def slow_submit(call):
            await asyncio.sleep(0.01)
            return "0xtx"

        submitter.submit.side_effect = slow_submit

        outcomes = await asyncio.gather(*(gate.dispatch(MESSAGE_ID, CALL) for _ in range(5)))

        assert submitter.submit.call_count == 1
        assert outcomes.count(DispatchOutcome.SUBMITTED) == 1
        assert outcomes.count(DispatchOutcome.DUPLICATE) == 4
        assert MESSAGE_ID not in session.locks

    @pytest.mark.asyncio
    async def test_distinct_identifiers_are_independent(self, gate, submitter):
        other_id = "0x" + "cd" * 32

        await gate.dispatch(MESSAGE_ID, CALL)
        await gate.dispatch(other_id, CALL)

        assert submitter.submit.call_count == 2

    @pytest.mark.asyncio
    async def test_already_done_is_benign(self, gate, session, submitter, caplog):
        submitter.submit.side_effect = ContractLogicError("execution reverted: already verified")

        with caplog.at_level(logging.INFO):
            outcome = await gate.dispatch(MESSAGE_ID, CALL)

        assert outcome is DispatchOutcome.ALREADY_DONE
        assert MESSAGE_ID in session.seen
        assert session.already_done == 1
        assert session.failures == 0
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert "already performed" in caplog.text

        # A later delivery is a plain duplicate
        assert await gate.dispatch(MESSAGE_ID, CALL) is DispatchOutcome.DUPLICATE
        assert submitter.submit.call_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", [
        "Message Already Executed",
        "reverted: already   delivered",
        "packet already attested",
    ])
    async def test_already_done_pattern_is_case_insensitive(self, gate, submitter, message):
        submitter.submit.side_effect = Exception(message)

        assert await gate.dispatch(MESSAGE_ID, CALL) is DispatchOutcome.ALREADY_DONE

    @pytest.mark.asyncio
    async def test_genuine_failure_stays_retryable(self, gate, session, submitter, caplog):
        submitter.submit.side_effect = [Exception("insufficient funds for gas"), "0xtx"]

        with caplog.at_level(logging.INFO):
            first = await gate.dispatch(MESSAGE_ID, CALL)

        assert first is DispatchOutcome.FAILED
        assert MESSAGE_ID not in session.seen
        assert session.failures == 1
        assert "insufficient funds" in caplog.text
        assert any(r.levelno == logging.ERROR for r in caplog.records)

        second = await gate.dispatch(MESSAGE_ID, CALL)

        assert second is DispatchOutcome.SUBMITTED
        assert submitter.submit.call_count == 2
        assert MESSAGE_ID in session.seen

    @pytest.mark.asyncio
    async def test_timeout_is_a_failure(self, gate, session, submitter):
        submitter.submit.side_effect = asyncio.TimeoutError()

        assert await gate.dispatch(MESSAGE_ID, CALL) is DispatchOutcome.FAILED
        assert MESSAGE_ID not in session.seen

    @pytest.mark.asyncio
    async def test_custom_already_done_pattern(self, session, submitter):
        gate = DispatchGate(session, submitter, already_done_pattern=r"DuplicateAttestation")
        submitter.submit.side_effect = Exception("custom error DuplicateAttestation()")

        assert await gate.dispatch(MESSAGE_ID, CALL) is DispatchOutcome.ALREADY_DONE

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, gate, session, submitter):
        submitter.submit.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await gate.dispatch(MESSAGE_ID, CALL)
        assert MESSAGE_ID not in session.seen


class TestBuildDestinationCall:

    def _send_event(self) -> SendEvent:
        return SendEvent(
            src_chain_id=1,
            sender=b"\x01" * 32,
            nonce=1,
            dst_chain_id=2,
            receiver=Web3.to_checksum_address("0x" + "bb" * 20),
            payload_hash=b"\x02" * 32,
            block_number=1,
            transaction_hash="0x" + "00" * 32,
            log_index=0,
        )

    @pytest.mark.parametrize("function_name", ["submitAttestation", "execute"])
    def test_identifier_calls(self, function_name):
        call = build_destination_call(function_name, MESSAGE_ID, self._send_event())

        assert call.function_name == function_name
        assert call.args == (bytes.fromhex("ab" * 32),)

    def test_verify_call_carries_origin(self):
        event = self._send_event()

        call = build_destination_call("verify", MESSAGE_ID, event)

        assert call.args == ((1, b"\x01" * 32, 1), event.receiver, b"\x02" * 32)

    def test_verify_needs_send_event(self):
        status = StatusEvent(MESSAGE_ID, "0x" + "00" * 20, 1, "0x" + "00" * 32, 0)

        with pytest.raises(ValueError, match="send-type"):
            build_destination_call("verify", MESSAGE_ID, status)

    def test_unknown_function(self):
        with pytest.raises(ValueError, match="Unsupported"):
            build_destination_call("commit", MESSAGE_ID, self._send_event())


class TestDescribeError:

    def test_timeout(self):
        assert describe_error(asyncio.TimeoutError()) == "confirmation timed out"

    def test_empty_message_falls_back_to_type(self):
        assert describe_error(RuntimeError()) == "RuntimeError"
