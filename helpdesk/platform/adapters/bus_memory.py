import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from helpdesk.platform.ports.stream_bus import StreamBusPort, StreamEntry
from helpdesk.core.errors import QueueGroupMissingError

log = logging.getLogger("bus.memory")

def _order(entry_id: str) -> tuple[int, int]:
    ms, _, seq = entry_id.partition("-")
    return int(ms), int(seq or 0)

@dataclass
class _Group:
    cursor: int = 0  # index of the next never-delivered entry
    pending: dict[str, str] = field(default_factory=dict)  # entry_id -> consumer

class InMemoryStreamBus(StreamBusPort):
    """Single-process stand-in for Redis Streams (local runs and tests).

    Mirrors the consumer-group contract: an entry is handed to one consumer of
    a group and stays pending until acked.
    """

    def __init__(self):
        self._streams: dict[str, list[tuple[str, dict]]] = {}
        self._groups: dict[tuple[str, str], _Group] = {}
        self._seq = 0
        self._changed = asyncio.Condition()

    async def append(self, stream: str, payload: dict) -> str:
        self._seq += 1
        entry_id = f"{int(time.time() * 1000)}-{self._seq}"
        self._streams.setdefault(stream, []).append((entry_id, copy.deepcopy(payload)))
        log.debug(f"[MEMORY BUS] append stream={stream} id={entry_id}")
        async with self._changed:
            self._changed.notify_all()
        return entry_id

    async def ensure_consumer_group(self, stream: str, group: str) -> None:
        self._streams.setdefault(stream, [])
        self._groups.setdefault((stream, group), _Group())

    async def read_group(self, stream: str, group: str, consumer: str, *, count: int = 10, block_ms: int = 2000, pending: bool = False, after: str = "0") -> list[StreamEntry]:
        g = self._groups.get((stream, group))
        if g is None:
            raise QueueGroupMissingError(stream, group)
        stream_log = self._streams[stream]

        if pending:
            by_id = dict(stream_log)
            mine = sorted(
                (eid for eid, owner in g.pending.items() if owner == consumer and _order(eid) > _order(after)),
                key=_order,
            )[:count]
            return [StreamEntry(entry_id=eid, payload=copy.deepcopy(by_id[eid])) for eid in mine]

        if g.cursor >= len(stream_log) and block_ms > 0:
            async with self._changed:
                try:
                    await asyncio.wait_for(
                        self._changed.wait_for(lambda: g.cursor < len(stream_log)),
                        timeout=block_ms / 1000,
                    )
                except asyncio.TimeoutError:
                    return []

        batch = stream_log[g.cursor:g.cursor + count]
        g.cursor += len(batch)
        for eid, _ in batch:
            g.pending[eid] = consumer
        return [StreamEntry(entry_id=eid, payload=copy.deepcopy(p)) for eid, p in batch]

    async def ack(self, stream: str, group: str, entry_id: str) -> None:
        g = self._groups.get((stream, group))
        if g is not None:
            g.pending.pop(entry_id, None)

    def pending_ids(self, stream: str, group: str) -> list[str]:
        g = self._groups.get((stream, group))
        return list(g.pending) if g else []

    def entries(self, stream: str) -> list[dict]:
        return [copy.deepcopy(p) for _, p in self._streams.get(stream, [])]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
