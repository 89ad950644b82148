import json
import logging
from redis import asyncio as aioredis
from .config import settings

log = logging.getLogger("cache.redis")

class RedisManager:
    """JSON key/value cache on top of redis.asyncio.

    Holds the small bits of state that must survive a restart but are not
    worth a table: the mailbox high-water mark, the QR session snapshot and
    cached classifications.
    """

    def __init__(self, url: str | None = None):
        self.url = url or settings.REDIS_URL
        self.redis = None

    async def connect(self):
        """Connect to Redis (called on startup)."""
        if self.redis is None:
            self.redis = aioredis.from_url(self.url, encoding="utf-8", decode_responses=True)

    async def close(self):
        if self.redis:
            await self.redis.aclose()
            self.redis = None

    async def get_json(self, key: str):
        data = await self.redis.get(key)
        if data is None:
            return None
        return json.loads(data)

    async def set_json(self, key: str, value, ttl_seconds: int | None = None):
        payload = json.dumps(value, ensure_ascii=False)
        if ttl_seconds:
            await self.redis.setex(key, int(ttl_seconds), payload)
        else:
            await self.redis.set(key, payload)

    async def delete(self, key: str):
        await self.redis.delete(key)

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            log.warning(f"Redis ping failed: {e}")
            return False

redis_manager = RedisManager()
