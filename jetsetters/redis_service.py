"""
Redis Service for Jetsetters
Per-payment exclusive locks so a callback, a poll and a cancellation never move the same money at once
"""

import redis.asyncio as aioredis
import asyncio
import os
import uuid
from contextlib import asynccontextmanager
from typing import Optional
import logging
from dotenv import load_dotenv

from .errors import InconsistentState

load_dotenv()
logger = logging.getLogger(__name__)

# compare-and-delete so a lock that expired and was re-taken is not released by the old holder
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisService:
    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or os.getenv('REDIS_URL', 'redis://localhost:6379/0')
        self.redis_client: Optional[aioredis.Redis] = None
        self.lock_ttl = int(os.getenv('PAYMENT_LOCK_TTL_SECONDS', 60))
        self.lock_wait = float(os.getenv('PAYMENT_LOCK_WAIT_SECONDS', 10))

    async def connect(self):
        """Connect to Redis"""
        try:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            # Test connection
            await self.redis_client.ping()
            logger.info("✅ Connected to Redis")
        except Exception as e:
            logger.error(f"❌ Failed to connect to Redis: {e}")
            raise

    async def disconnect(self):
        """Disconnect from Redis"""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("📴 Disconnected from Redis")

    async def ping(self) -> bool:
        try:
            if not self.redis_client:
                await self.connect()
            return bool(await self.redis_client.ping())
        except Exception as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    async def acquire_lock(self, resource: str, token: str, timeout: int = 60) -> bool:
        """
        Try once to take the lock for resource.
        Returns True if acquired, False if someone else holds it.
        """
        lock_key = f"lock:{resource}"
        if not self.redis_client:
            await self.connect()
        result = await self.redis_client.set(lock_key, token, nx=True, ex=timeout)
        if result:
            logger.debug(f"🔒 Acquired lock for {resource}")
            return True
        return False

    async def release_lock(self, resource: str, token: str) -> bool:
        """Release the lock for resource if we still own it"""
        lock_key = f"lock:{resource}"
        try:
            result = await self.redis_client.eval(RELEASE_SCRIPT, 1, lock_key, token)
            if result:
                logger.debug(f"🔓 Released lock for {resource}")
            else:
                logger.warning(f"Lock for {resource} expired before release")
            return bool(result)
        except Exception as e:
            logger.error(f"Error releasing lock for {resource}: {e}")
            return False

    async def is_locked(self, resource: str) -> bool:
        """Check if resource is locked"""
        if not self.redis_client:
            await self.connect()
        return await self.redis_client.exists(f"lock:{resource}") > 0

    @asynccontextmanager
    async def payment_lock(self, payment_id, wait: Optional[float] = None, retry_interval: float = 0.1):
        """
        Hold the exclusive lock for one payment for the duration of the block.

        Retries until ``wait`` seconds have passed, then raises InconsistentState.
        The lock is always released on exit.
        """
        resource = f"payment:{payment_id}"
        token = uuid.uuid4().hex
        deadline = asyncio.get_running_loop().time() + (self.lock_wait if wait is None else wait)

        while not await self.acquire_lock(resource, token, timeout=self.lock_ttl):
            if asyncio.get_running_loop().time() >= deadline:
                logger.warning(f"⏰ Payment {payment_id} is locked by another operation")
                raise InconsistentState(
                    f"Payment {payment_id} is being processed by another operation",
                    {"payment_id": str(payment_id)}
                )
            await asyncio.sleep(retry_interval)

        try:
            yield
        finally:
            await self.release_lock(resource, token)


# Global Redis service instance
redis_service = RedisService()


# FastAPI dependency
async def get_redis():
    """Dependency for FastAPI to get Redis service"""
    if not redis_service.redis_client:
        await redis_service.connect()
    return redis_service
