from __future__ import annotations

try:
    import redis.asyncio as aioredis
except Exception:  # pragma: no cover - optional dependency at runtime
    aioredis = None  # type: ignore[assignment]


class RedisCacheTier:
    """Shared tier over Redis. Keys are namespaced so several bots can share one instance."""

    def __init__(self, url: str, *, key_prefix: str = "fixbot:", client: object | None = None) -> None:
        self.url = url.strip()
        self.key_prefix = key_prefix
        self._client = client

    def _client_or_connect(self):
        if self._client is None:
            if aioredis is None:
                raise RuntimeError("Shared cache tier requires redis. Install with: pip install 'fixbot-sessions[redis]'")
            if not self.url:
                raise ValueError("REDIS_URL cannot be empty")
            self._client = aioredis.from_url(self.url, decode_responses=True)
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> str | None:
        value = await self._client_or_connect().get(self._key(key))
        return None if value is None else str(value)

    async def set(self, key: str, value: str, ttl: float) -> None:
        client = self._client_or_connect()
        ttl_ms = int(ttl * 1000)
        if ttl_ms <= 0:
            await client.delete(self._key(key))
            return
        await client.set(self._key(key), value, px=ttl_ms)

    async def delete(self, key: str) -> None:
        await self._client_or_connect().delete(self._key(key))

    async def delete_prefix(self, prefix: str) -> int:
        client = self._client_or_connect()
        doomed = [name async for name in client.scan_iter(match=f"{self._key(prefix)}*", count=500)]
        if not doomed:
            return 0
        return int(await client.delete(*doomed))

    async def ping(self) -> None:
        await self._client_or_connect().ping()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
