import asyncio
import logging
import os
import signal
import socket
import time
from typing import Awaitable, Callable
from helpdesk.core.config import settings
from helpdesk.core.errors import QueueGroupMissingError
from helpdesk.core.logging import bind_log_context
from helpdesk.platform.ports.stream_bus import StreamBusPort, StreamEntry

Handler = Callable[[dict], Awaitable[None]]

def consumer_name(prefix: str) -> str:
    return f"{prefix}-{socket.gethostname()}-{os.getpid()}"

def install_signal_handlers(stop: asyncio.Event, log: logging.Logger) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            log.debug(f"Signal handler for {sig.name} not supported on this platform")

class StreamConsumer:
    """At-least-once consumption of one stream through a consumer group.

    An entry is acked only after ``handler`` returned; a raising handler leaves
    it pending, and a periodic sweep over this consumer's pending entries
    redelivers it. The sweep walks the pending list a batch at a time and each
    failing entry backs off on its own, so entries that keep failing never hold
    back the ones behind them. Setting ``stop`` ends the loop after the current entry.
    """

    def __init__(self, bus: StreamBusPort, stream: str, group: str, consumer: str, handler: Handler, *,
                 batch_size: int | None = None, block_ms: int | None = None,
                 retry_backoff: float | None = None, max_backoff: float | None = None,
                 logger: logging.Logger | None = None):
        self.bus = bus
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.handler = handler
        self.batch_size = batch_size or settings.QUEUE_BATCH_SIZE
        self.block_ms = block_ms if block_ms is not None else settings.QUEUE_BLOCK_MS
        self.retry_backoff = retry_backoff if retry_backoff is not None else settings.QUEUE_RETRY_BACKOFF_SECONDS
        self.max_backoff = max_backoff or settings.QUEUE_MAX_BACKOFF_SECONDS
        self.log = logger or logging.getLogger(f"worker.{group}")
        self._last_sweep: float | None = None
        self._sweep_from = "0"
        # entry_id -> (failed attempts, monotonic time of the next retry)
        self._retries: dict[str, tuple[int, float]] = {}

    async def run(self, stop: asyncio.Event) -> None:
        await self.bus.ensure_consumer_group(self.stream, self.group)
        self.log.info(f"Consumer {self.consumer} reading {self.stream} as group {self.group}")
        backoff = self.retry_backoff
        while not stop.is_set():
            try:
                await self.run_once(stop)
            except QueueGroupMissingError:
                self.log.warning(f"Consumer group {self.group} missing on {self.stream}; recreating")
                await self.bus.ensure_consumer_group(self.stream, self.group)
                continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.log.error(f"Error reading from {self.stream}: {e}; retrying in {backoff:.0f}s")
                await self._sleep(stop, backoff)
                backoff = min(backoff * 2, self.max_backoff)
                continue
            backoff = self.retry_backoff
        self.log.info(f"Consumer {self.consumer} stopped")

    async def run_once(self, stop: asyncio.Event | None = None) -> int:
        """One read cycle: the pending sweep when due, then new entries. Returns entries acked."""
        acked = 0
        now = time.monotonic()
        if self._last_sweep is None or now - self._last_sweep >= self.retry_backoff:
            self._last_sweep = now
            acked += await self.sweep(stop)
        if stop is not None and stop.is_set():
            return acked
        entries = await self.bus.read_group(self.stream, self.group, self.consumer, count=self.batch_size, block_ms=self.block_ms)
        acked += await self.process(entries, stop)
        return acked

    async def sweep(self, stop: asyncio.Event | None = None) -> int:
        """Retry the next batch of this consumer's pending entries that are due."""
        start = self._sweep_from
        pending = await self.bus.read_group(
            self.stream, self.group, self.consumer, count=self.batch_size, pending=True, after=start,
        )
        if len(pending) < self.batch_size:
            # end of the pending list; wrap around on the next sweep
            self._sweep_from = "0"
            if start == "0":
                live = {e.entry_id for e in pending}
                self._retries = {eid: r for eid, r in self._retries.items() if eid in live}
        else:
            self._sweep_from = pending[-1].entry_id
        now = time.monotonic()
        due = [e for e in pending if self._retries.get(e.entry_id, (0, now))[1] <= now]
        if due:
            self.log.info(f"Retrying {len(due)} pending entries on {self.stream}")
        return await self.process(due, stop)

    async def process(self, entries: list[StreamEntry], stop: asyncio.Event | None = None) -> int:
        acked = 0
        for entry in entries:
            if stop is not None and stop.is_set():
                # left pending; redelivered on the next start
                break
            with bind_log_context(f"{self.stream}:{entry.entry_id}"):
                try:
                    await self.handler(entry.payload)
                except Exception as e:
                    attempts = self._retries.get(entry.entry_id, (0, 0.0))[0] + 1
                    delay = min(self.retry_backoff * 2 ** (attempts - 1), self.max_backoff)
                    self._retries[entry.entry_id] = (attempts, time.monotonic() + delay)
                    self.log.error(
                        f"Failed to process entry {entry.entry_id} (attempt {attempts}): {e}; "
                        f"leaving it pending, next retry in {delay:.0f}s"
                    )
                    continue
                await self.bus.ack(self.stream, self.group, entry.entry_id)
                self._retries.pop(entry.entry_id, None)
                acked += 1
        return acked

    @staticmethod
    async def _sleep(stop: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
