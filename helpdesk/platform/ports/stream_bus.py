from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

@dataclass
class StreamEntry:
    entry_id: str
    payload: dict = field(default_factory=dict)

@runtime_checkable
class StreamBusPort(Protocol):
    """Append-only log with consumer groups and explicit acknowledgment.

    ``read_group`` with ``pending=False`` hands out entries never delivered to
    the group; ``pending=True`` re-reads the entries already delivered to this
    consumer but not yet acknowledged, in id order, starting after ``after``
    ("0" for the head of the pending list). Raises ``QueueGroupMissingError`` when
    the group does not exist.
    """

    async def append(self, stream: str, payload: dict) -> str: ...

    async def ensure_consumer_group(self, stream: str, group: str) -> None: ...

    async def read_group(self, stream: str, group: str, consumer: str, *, count: int = 10, block_ms: int = 2000, pending: bool = False, after: str = "0") -> list[StreamEntry]: ...

    async def ack(self, stream: str, group: str, entry_id: str) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
