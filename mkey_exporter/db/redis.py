"""Redis key metadata client.

Redis has no single "dump all key metadata" command, so a fetch is:

  SCAN 0 COUNT 1000          -> a batch of key names + a cursor
  MEMORY USAGE <key> ...     -> pipelined, one reply per key
  ... repeat until the cursor comes back as 0

SCAN is cursor-based and never blocks the server for long, unlike KEYS.
It may return a key twice or miss keys written mid-iteration, which is
acceptable for a snapshot that is rebuilt every cycle.  A key that
expires between SCAN and MEMORY USAGE comes back as None and is skipped.

CONNECTION POOLING
------------------
redis-py pools connections internally, so RedisPool keeps one
redis.asyncio.Redis per host.  get() pings it (fail fast when the server
is down), put() is a no-op, and discard() closes the client and forgets
it so the next get() builds a fresh one.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from mkey_exporter.core.config import Settings
from mkey_exporter.db.pool import CacheConnectionError, CacheProtocolError, split_host
from mkey_exporter.models.rules import CacheKeyRecord

logger = logging.getLogger(__name__)

DEFAULT_PORT = 6379
SCAN_COUNT = 1000


class RedisKeyClient:
    def __init__(self, host: str, redis_client: aioredis.Redis) -> None:  # type: ignore[type-arg]
        self.host = host
        self._redis = redis_client

    async def ping(self) -> None:
        await self._redis.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool

    async def close(self) -> None:
        await self._redis.aclose()

    async def _sizes(self, keys: list[bytes]) -> list[CacheKeyRecord]:
        pipe = self._redis.pipeline(transaction=False)
        for key in keys:
            pipe.memory_usage(key)
        sizes = await pipe.execute()

        records = []
        for key, size in zip(keys, sizes):
            if size is None:
                continue
            records.append(
                CacheKeyRecord(key=key.decode("utf-8", "backslashreplace"), size=int(size))
            )
        return records

    async def fetch_keys(self) -> list[CacheKeyRecord]:
        records: list[CacheKeyRecord] = []
        cursor = 0
        try:
            while True:
                cursor, keys = await self._redis.scan(cursor, count=SCAN_COUNT)
                if keys:
                    records.extend(await self._sizes(keys))
                if cursor == 0:
                    break
        except RedisError as exc:
            raise CacheProtocolError(f"fetching keys from {self.host}: {exc}") from exc
        return records


class RedisPool:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._clients: dict[str, RedisKeyClient] = {}

    def url(self, host: str) -> str:
        name, port = split_host(host, DEFAULT_PORT)
        if ":" in name:
            name = f"[{name}]"
        scheme = "rediss" if self._settings.tls_enabled else "redis"
        return f"{scheme}://{name}:{port}"

    def _build(self, host: str) -> RedisKeyClient:
        s = self._settings
        kwargs: dict[str, object] = {
            "decode_responses": False,  # keys may not be valid UTF-8
            "socket_timeout": s.cache_timeout_secs,
            "socket_connect_timeout": s.cache_timeout_secs,
        }
        if s.tls_enabled:
            kwargs["ssl_ca_certs"] = s.tls_ca
            kwargs["ssl_certfile"] = s.tls_cert
            kwargs["ssl_keyfile"] = s.tls_key

        redis_client = aioredis.from_url(self.url(host), **kwargs)
        return RedisKeyClient(host, redis_client)

    async def get(self, host: str) -> RedisKeyClient:
        client = self._clients.get(host)
        if client is None:
            client = self._clients[host] = self._build(host)

        try:
            await client.ping()
        except (RedisError, OSError) as exc:
            raise CacheConnectionError(f"cannot connect to {host}: {exc}") from exc
        return client

    async def put(self, client: RedisKeyClient) -> None:
        return None

    async def discard(self, client: RedisKeyClient) -> None:
        if self._clients.get(client.host) is client:
            del self._clients[client.host]
        await client.close()
        logger.debug("Discarded redis client for %s", client.host)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
        logger.info("Redis connection pools closed")
