"""Cache client seam used by the refresh loop.

The refresh loop only knows these protocols.  Which cache server sits
behind them is decided once, by build_pool(), from CACHE_BACKEND:

  memcached -> MemcachedPool  (lru_crawler metadump)
  redis     -> RedisPool      (SCAN + MEMORY USAGE)

Tests plug in their own in-memory pools.
"""

from __future__ import annotations

import ssl
from typing import Protocol, runtime_checkable

from mkey_exporter.core.config import Settings
from mkey_exporter.models.rules import CacheKeyRecord


class CacheClientError(Exception):
    """Base class for failures talking to the cache server."""


class CacheConnectionError(CacheClientError):
    """The cache server could not be reached."""


class CacheProtocolError(CacheClientError):
    """The cache server answered with an error or something unparseable."""


@runtime_checkable
class KeyMetadataClient(Protocol):
    host: str

    async def fetch_keys(self) -> list[CacheKeyRecord]:
        """Return metadata for every key currently stored on the server."""
        ...


@runtime_checkable
class ClientPool(Protocol):
    async def get(self, host: str) -> KeyMetadataClient:
        """Borrow a connected client.  Raises CacheConnectionError."""
        ...

    async def put(self, client: KeyMetadataClient) -> None:
        """Return a healthy client for reuse."""
        ...

    async def discard(self, client: KeyMetadataClient) -> None:
        """Close a client that failed mid-operation; it is never reused."""
        ...

    async def close(self) -> None: ...


def split_host(host: str, default_port: int) -> tuple[str, int]:
    """Split 'hostname:port' (or '[v6]:port').  Port defaults when missing."""
    if host.startswith("["):
        end = host.find("]")
        if end == -1:
            raise ValueError(f"invalid host {host!r}")
        name = host[1:end]
        rest = host[end + 1 :]
        port_raw = rest[1:] if rest.startswith(":") else ""
    elif host.count(":") == 1:
        name, port_raw = host.split(":")
    else:
        name, port_raw = host, ""

    if not port_raw:
        return name, default_port
    try:
        return name, int(port_raw)
    except ValueError:
        raise ValueError(f"invalid port in host {host!r}") from None


def build_ssl_context(settings: Settings) -> ssl.SSLContext | None:
    if not settings.tls_enabled:
        return None

    ctx = ssl.create_default_context(cafile=settings.tls_ca)
    if settings.tls_cert and settings.tls_key:
        ctx.load_cert_chain(settings.tls_cert, settings.tls_key)
    return ctx


def build_pool(settings: Settings) -> ClientPool:
    if settings.cache_backend == "redis":
        from mkey_exporter.db.redis import RedisPool

        return RedisPool(settings)

    from mkey_exporter.db.memcached import MemcachedPool

    return MemcachedPool(
        ssl_context=build_ssl_context(settings),
        server_name=settings.tls_server_name,
        timeout=settings.cache_timeout_secs,
    )
