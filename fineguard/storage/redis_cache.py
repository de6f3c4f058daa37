from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis


class RedisRevocationList:
    """Redis-backed refresh-token revocation list shared by every API node.

    Keys:
    - ``auth:refresh:consumed:{jti}``: set once with ``NX`` when a refresh
      token is rotated; a second ``SET NX`` on the same key is a replay.
    - ``auth:family:revoked:{sid}``: session family killed by logout or
      reuse detection.
    - ``auth:identity:families:{identity_id}``: families minted for an
      identity, so a password reset can revoke all of them.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, client: Any = None):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

    async def consume_refresh(self, jti: str, ttl_seconds: int) -> bool:
        created = await self.client.set(
            f"auth:refresh:consumed:{jti}", "1", ex=max(1, int(ttl_seconds)), nx=True
        )
        return bool(created)

    async def register_family(self, identity_id: str, session_id: str, ttl_seconds: int) -> None:
        key = f"auth:identity:families:{identity_id}"
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.sadd(key, session_id)
            pipe.expire(key, max(1, int(ttl_seconds)))
            await pipe.execute()

    async def families_for(self, identity_id: str) -> list[str]:
        members = await self.client.smembers(f"auth:identity:families:{identity_id}")
        return sorted(members or [])

    async def revoke_family(self, session_id: str, ttl_seconds: int) -> None:
        await self.client.set(
            f"auth:family:revoked:{session_id}", "1", ex=max(1, int(ttl_seconds))
        )

    async def is_family_revoked(self, session_id: str) -> bool:
        return bool(await self.client.exists(f"auth:family:revoked:{session_id}"))

    async def is_refresh_consumed(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:refresh:consumed:{jti}"))
