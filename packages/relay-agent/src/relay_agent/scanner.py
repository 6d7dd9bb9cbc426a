"""
Backfill and live tail over a log source.

The scanner walks history in bounded chunks up to a moving head, then keeps
coverage going either from a push subscription or from polled new-block
notifications. Every log goes through the same decode, identify and
dispatch path, and one bad log never stops the rest of its batch.
"""

import asyncio
import logging
from typing import Any

from .dispatch_gate import DispatchGate, build_destination_call
from .event_decoder import EventDecodeError, EventDecoder, parse_quantity
from .message_id import derive_message_id
from .models import DispatchOutcome, RelaySession
from .utils.log_source import HttpLogSource, WebSocketLogSource


class LogScanner:
    """
    Drives one relay role over one log source.

    The session cursor is the next unscanned block. It is only advanced
    after the logs of a range have been handed to the dispatch gate.
    """

    PUSH_QUEUE_SIZE = 10000
    BASE_DELAY = 1
    MAX_DELAY = 60
    STABLE_SUBSCRIPTION = 60  # seconds up before a subscription counts as healthy

    def __init__(
        self,
        source: HttpLogSource | WebSocketLogSource,
        decoder: EventDecoder,
        gate: DispatchGate,
        session: RelaySession,
        function_name: str,
        scan_range: int = 2000,
        poll_interval: float = 2.0,
        max_retries: int = 5
    ):
        """
        Initialize the scanner.

        Args:
            source: Log source adapter (push or pull)
            decoder: Decoder for the configured source event
            gate: Dispatch gate shared by backfill and live tail
            session: Relay session holding the cursor
            function_name: Destination function for the role
            scan_range: Maximum number of blocks per log query
            poll_interval: Seconds between head polls / error retries
            max_retries: Consecutive push subscription failures tolerated
        """
        self.source = source
        self.decoder = decoder
        self.gate = gate
        self.session = session
        self.function_name = function_name
        self.scan_range = scan_range
        self.poll_interval = poll_interval
        self.max_retries = max_retries

        self.is_running = False
        self.push_delivered = False

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def handle_log(self, raw_log: Any) -> DispatchOutcome | None:
        """
        Decode one log, derive its identifier and dispatch it.

        Args:
            raw_log: Log record from the source

        Returns:
            The dispatch outcome, or None if the log was rejected
        """
        try:
            event = self.decoder.decode(raw_log)
        except EventDecodeError as e:
            self.session.decode_errors += 1
            self.logger.error(f"Skipping undecodable log: {e}")
            return None

        message_id = derive_message_id(event)
        try:
            call = build_destination_call(self.function_name, message_id, event)
        except ValueError as e:
            self.logger.error(f"Cannot build {self.function_name} call for {message_id}: {e}")
            return None

        self.logger.info(f"{event} -> {message_id}")
        return await self.gate.dispatch(message_id, call)

    async def process_batch(self, logs: list[Any]) -> None:
        """Handle every log of a batch in order, isolating failures per log."""
        for raw_log in logs:
            try:
                await self.handle_log(raw_log)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Unexpected error handling log: {e}", exc_info=True)

    async def _current_head(self) -> int | None:
        try:
            return await self.source.get_block_number()
        except Exception as e:
            self.logger.error(f"Error fetching block number: {e}")
            return None

    async def _scan_chunk(self, from_block: int, to_block: int) -> bool:
        """
        Query and process one inclusive range, then advance the cursor.

        Returns:
            False if the query failed (cursor unchanged)
        """
        try:
            logs = await self.source.get_logs(from_block, to_block)
        except Exception as e:
            self.logger.error(f"Error querying logs {from_block}-{to_block}: {e}")
            return False

        if logs:
            self.logger.info(f"Found {len(logs)} logs in blocks {from_block}-{to_block}")
        await self.process_batch(logs)
        self.session.advance(to_block + 1)
        return True

    async def scan_to(self, target_block: int) -> bool:
        """
        Cover ``[cursor, target_block]`` in chunks of at most ``scan_range``.

        Returns:
            False if a chunk failed; the rest is left for a later pass
        """
        while self.session.cursor <= target_block:
            from_block = self.session.cursor
            to_block = min(from_block + self.scan_range - 1, target_block)
            if not await self._scan_chunk(from_block, to_block):
                return False
        return True

    async def backfill(self) -> int:
        """
        Replay history from the cursor up to a moving head.

        The head is re-read after every chunk, so the loop converges on a
        head that keeps advancing during the replay.

        Returns:
            The last head observed (the cursor is past it)
        """
        self.logger.info(f"Backfill starting at block {self.session.cursor}")
        while True:
            head = await self._current_head()
            if head is None:
                await asyncio.sleep(self.poll_interval)
                continue
            if self.session.cursor > head:
                self.logger.info(f"Backfill complete up to block {head}")
                return head

            from_block = self.session.cursor
            to_block = min(from_block + self.scan_range - 1, head)
            if not await self._scan_chunk(from_block, to_block):
                await asyncio.sleep(self.poll_interval)

    async def on_new_block(self, block_number: int) -> None:
        """
        Handle a new-block notification on the pull transport.

        Notifications for blocks already covered are ignored, so storms
        or out-of-order notifications never rescan a range.
        """
        if self.session.cursor > block_number:
            self.logger.debug(
                f"Block {block_number} already covered (cursor {self.session.cursor})"
            )
            return
        await self.scan_to(block_number)

    async def tail_poll(self) -> None:
        """Follow new blocks on the pull transport until stopped."""
        self.logger.info(f"Polling new blocks every {self.poll_interval}s")
        async for block_number in self.source.new_blocks(self.poll_interval):
            if not self.is_running:
                break
            await self.on_new_block(block_number)

    async def tail_push(self, queue: asyncio.Queue, handoff_block: int) -> None:
        """
        Consume pushed logs as the single consumer of ``queue``.

        Logs below ``handoff_block`` were already covered by backfill and
        are dropped. Logs removed by a reorg are ignored.

        Args:
            queue: Queue fed by the subscription
            handoff_block: Cursor at the end of backfill
        """
        while True:
            raw_log = await queue.get()
            self.push_delivered = True
            try:
                if raw_log.get("removed", False):
                    self.logger.debug("Ignoring log removed by reorg")
                    continue

                block_number = parse_quantity(raw_log.get("blockNumber"))
                if block_number < handoff_block:
                    continue

                await self.handle_log(raw_log)
                # Not past the block: more logs of it may still arrive
                self.session.advance(block_number)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error handling pushed log: {e}", exc_info=True)
            finally:
                queue.task_done()

    def reconnect_delay(self, retry_count: int) -> float:
        """Exponential backoff before reconnect attempt ``retry_count``."""
        return min(self.BASE_DELAY * (2 ** retry_count), self.MAX_DELAY)

    async def _push_round(self) -> bool:
        """
        One subscription lifetime: subscribe, backfill, consume pushed logs.

        The subscription is installed before backfill so nothing emitted
        during the replay is lost. If it ends while backfill is still
        running, backfill is abandoned and resumes from the cursor on the
        next round.

        Returns:
            True if the subscription delivered a log or stayed up for
            ``STABLE_SUBSCRIPTION`` seconds
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.PUSH_QUEUE_SIZE)
        self.push_delivered = False
        started: float | None = None

        subscription = asyncio.create_task(self.source.subscribe(queue))
        backfill = asyncio.create_task(self.backfill())
        consumer: asyncio.Task | None = None
        try:
            await asyncio.wait({subscription, backfill}, return_when=asyncio.FIRST_COMPLETED)
            if backfill.done():
                backfill.result()
                started = loop.time()
                consumer = asyncio.create_task(
                    self.tail_push(queue, handoff_block=self.session.cursor)
                )
                await asyncio.wait({subscription, consumer}, return_when=asyncio.FIRST_COMPLETED)
            if subscription.done() and not subscription.cancelled():
                self.logger.warning(f"Log subscription ended: {subscription.exception()}")
        finally:
            for task in (subscription, backfill, consumer):
                if task is not None and not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass  # Expected when cancelling

        stayed_up = started is not None and loop.time() - started >= self.STABLE_SUBSCRIPTION
        return self.push_delivered or stayed_up

    async def _reconnect(self) -> bool:
        """Reopen the source connection; False if the node is still unreachable."""
        await self.source.close()
        try:
            await self.source.connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Reconnect failed: {e}")
            return False
        return True

    async def _run_push(self) -> None:
        """
        Run subscription rounds until stopped.

        Every failed round and every failed reconnect counts as one
        consecutive failure. The count resets once a subscription proves
        healthy, and ``max_retries`` consecutive failures raise
        ConnectionError.
        """
        retry_count = 0
        connected = True
        while self.is_running:
            if connected:
                healthy = await self._push_round()
                if not self.is_running:
                    break
                if healthy:
                    retry_count = 0

            retry_count += 1
            if retry_count >= self.max_retries:
                raise ConnectionError("Max log subscription retries reached")

            delay = self.reconnect_delay(retry_count)
            self.logger.info(
                f"Reconnecting in {delay} seconds (attempt {retry_count}/{self.max_retries})..."
            )
            await asyncio.sleep(delay)
            connected = await self._reconnect()

    async def run(self) -> None:
        """Backfill, then tail live logs with the transport's strategy."""
        self.is_running = True
        if self.source.supports_push:
            await self._run_push()
        else:
            await self.backfill()
            await self.tail_poll()

    def stop(self) -> None:
        """Stop after the current notification."""
        self.is_running = False
