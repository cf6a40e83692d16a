"""Memcached key metadata client.

Memcached (1.5.19+) can stream metadata for every stored item with:

  lru_crawler metadump all

Each item comes back on its own line, terminated by END:

  key=user%3A123%3Aprofile exp=-1 la=1693501794 cas=12 fetch=no cls=1 size=63
  key=cart%3A456 exp=1693505394 la=1693501800 cas=13 fetch=yes cls=2 size=210
  END

Keys are URL-encoded by the server.  Only key, exp and size are used.

CONNECTIONS
-----------
MemcachedPool keeps a few idle connections per host and hands them out
with get()/put().  A connection that saw any error is closed via discard()
so a half-read response never leaks into the next cycle.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from collections import deque
from urllib.parse import unquote

from mkey_exporter.db.pool import (
    CacheConnectionError,
    CacheProtocolError,
    split_host,
)
from mkey_exporter.models.rules import CacheKeyRecord

logger = logging.getLogger(__name__)

DEFAULT_PORT = 11211
MAX_IDLE_PER_HOST = 4

_METADUMP = b"lru_crawler metadump all\r\n"
_ERROR_PREFIXES = ("ERROR", "CLIENT_ERROR", "SERVER_ERROR", "BUSY")


def parse_metadump_line(line: str) -> CacheKeyRecord:
    """Parse one 'key=... exp=... size=...' line.  Raises CacheProtocolError."""
    fields: dict[str, str] = {}
    for token in line.split():
        name, sep, value = token.partition("=")
        if sep:
            fields[name] = value

    if "key" not in fields or "size" not in fields:
        raise CacheProtocolError(f"malformed metadump line: {line!r}")

    try:
        size = int(fields["size"])
        expires = int(fields.get("exp", "-1"))
    except ValueError:
        raise CacheProtocolError(f"malformed metadump line: {line!r}") from None

    return CacheKeyRecord(key=unquote(fields["key"]), size=size, expires=expires)


class MemcachedClient:
    """A single connection to one Memcached server."""

    def __init__(
        self,
        host: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        timeout: float | None = None,
    ) -> None:
        self.host = host
        self._reader = reader
        self._writer = writer
        self._timeout = timeout

    async def _readline(self) -> str:
        try:
            raw = await asyncio.wait_for(self._reader.readline(), self._timeout)
        except asyncio.TimeoutError:
            raise CacheProtocolError(
                f"timed out after {self._timeout}s reading from {self.host}"
            ) from None
        if not raw:
            raise CacheProtocolError(f"connection to {self.host} closed mid-response")
        return raw.decode("utf-8", "replace").rstrip("\r\n")

    async def fetch_keys(self) -> list[CacheKeyRecord]:
        self._writer.write(_METADUMP)
        await self._writer.drain()

        records: list[CacheKeyRecord] = []
        while True:
            line = await self._readline()
            if line == "END":
                return records
            if line.startswith(_ERROR_PREFIXES):
                raise CacheProtocolError(f"{self.host} replied: {line}")
            if not line:
                continue
            records.append(parse_metadump_line(line))

    @property
    def is_closed(self) -> bool:
        return self._writer.is_closing()

    async def close(self) -> None:
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, ssl.SSLError) as exc:
            logger.debug("Error closing connection to %s: %s", self.host, exc)


class MemcachedPool:
    def __init__(
        self,
        *,
        ssl_context: ssl.SSLContext | None = None,
        server_name: str | None = None,
        timeout: float | None = 30.0,
        max_idle: int = MAX_IDLE_PER_HOST,
    ) -> None:
        self._ssl = ssl_context
        self._server_name = server_name
        self._timeout = timeout
        self._max_idle = max_idle
        self._idle: dict[str, deque[MemcachedClient]] = {}

    async def _connect(self, host: str) -> MemcachedClient:
        name, port = split_host(host, DEFAULT_PORT)
        kwargs = {}
        if self._ssl is not None:
            kwargs["ssl"] = self._ssl
            kwargs["server_hostname"] = self._server_name or name

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(name, port, **kwargs), self._timeout
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise CacheConnectionError(f"cannot connect to {host}: {exc!r}") from exc

        logger.debug("Opened memcached connection to %s", host)
        return MemcachedClient(host, reader, writer, timeout=self._timeout)

    async def get(self, host: str) -> MemcachedClient:
        idle = self._idle.get(host)
        while idle:
            client = idle.popleft()
            if not client.is_closed:
                return client
            await client.close()
        return await self._connect(host)

    async def put(self, client: MemcachedClient) -> None:
        idle = self._idle.setdefault(client.host, deque())
        if len(idle) >= self._max_idle or client.is_closed:
            await client.close()
            return
        idle.append(client)

    async def discard(self, client: MemcachedClient) -> None:
        await client.close()

    async def close(self) -> None:
        for idle in self._idle.values():
            while idle:
                await idle.popleft().close()
        self._idle.clear()
