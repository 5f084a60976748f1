# common/bus.py
from __future__ import annotations
import json
from typing import Any, Dict, Optional
from redis import asyncio as aioredis
from common.logging import get_logger

log = get_logger("bus")

class EventBus:
    """Thin wrapper over an asyncio Redis client for JSON stream events."""

    def __init__(self, redis_url: str, maxlen: int = 10000, client: Optional[aioredis.Redis] = None):
        self._redis_url = redis_url
        self._maxlen = maxlen
        self._redis = client

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def connect(self):
        if self._redis is None:
            log.info(f"Connecting to Redis: {self._redis_url}")
            self._redis = aioredis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
            try:
                pong = await self._redis.ping()
                log.info(f"Redis ping: {pong}")
            except Exception as e:
                log.error(f"Redis connection failed: {e}")
                raise
        return self

    async def close(self):
        if self._redis is not None:
            log.info("Closing Redis connection")
            await self._redis.aclose()
            self._redis = None

    async def xadd_json(self, stream: str, payload: Dict[str, Any]) -> str:
        assert self._redis is not None, "Call connect() first"
        data = {"json": json.dumps(payload, separators=(",", ":"))}
        msg_id = await self._redis.xadd(stream, data, maxlen=self._maxlen, approximate=True)
        log.debug(f"XADD stream={stream} id={msg_id}")
        return msg_id
