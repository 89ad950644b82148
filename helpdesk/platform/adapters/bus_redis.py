import json
import logging
from redis.asyncio import from_url as redis_from_url
from redis.exceptions import ResponseError
from helpdesk.platform.ports.stream_bus import StreamBusPort, StreamEntry
from helpdesk.core.config import settings
from helpdesk.core.errors import QueueGroupMissingError

log = logging.getLogger("bus.redis")

class RedisStreamBus(StreamBusPort):
    def __init__(self, url: str | None = None, maxlen: int | None = None):
        url = url or settings.REDIS_URL
        if not url:
            raise RuntimeError("REDIS_URL not configured")
        self.redis = redis_from_url(url, encoding="utf-8", decode_responses=True)
        self.maxlen = maxlen or settings.STREAM_MAXLEN

    async def append(self, stream: str, payload: dict) -> str:
        entry_id = await self.redis.xadd(
            stream,
            {"data": json.dumps(payload, ensure_ascii=False, default=str)},
            maxlen=self.maxlen,
            approximate=True,
        )
        log.debug(f"[REDIS BUS] XADD stream={stream} id={entry_id}")
        return entry_id

    async def ensure_consumer_group(self, stream: str, group: str) -> None:
        try:
            await self.redis.xgroup_create(stream, group, id="0", mkstream=True)
            log.info(f"Created consumer group {group} on {stream}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def read_group(self, stream: str, group: str, consumer: str, *, count: int = 10, block_ms: int = 2000, pending: bool = False, after: str = "0") -> list[StreamEntry]:
        try:
            if pending:
                res = await self.redis.xreadgroup(group, consumer, {stream: after}, count=count)
            else:
                res = await self.redis.xreadgroup(group, consumer, {stream: ">"}, count=count, block=block_ms)
        except ResponseError as e:
            if "NOGROUP" in str(e):
                raise QueueGroupMissingError(stream, group) from e
            raise

        entries: list[StreamEntry] = []
        for _stream, messages in res or []:
            for entry_id, fields in messages:
                if not fields:
                    # pending entry trimmed away by MAXLEN; nothing left to deliver
                    log.warning(f"[REDIS BUS] {stream}/{entry_id} trimmed before ack; dropping")
                    await self.ack(stream, group, entry_id)
                    continue
                try:
                    payload = json.loads(fields.get("data") or "{}")
                except json.JSONDecodeError:
                    log.error(f"[REDIS BUS] {stream}/{entry_id} carries invalid JSON; dropping")
                    await self.ack(stream, group, entry_id)
                    continue
                entries.append(StreamEntry(entry_id=entry_id, payload=payload))
        return entries

    async def ack(self, stream: str, group: str, entry_id: str) -> None:
        await self.redis.xack(stream, group, entry_id)
        log.debug(f"[REDIS BUS] XACK stream={stream} group={group} id={entry_id}")

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            log.warning(f"[REDIS BUS] ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.redis.aclose()
