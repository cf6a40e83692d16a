from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

# Ensure repo root is on sys.path so `import mkey_exporter` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mkey_exporter.core.config import Settings  # noqa: E402
from mkey_exporter.core.metrics import ExporterMetrics  # noqa: E402
from mkey_exporter.core.rules import build_groups  # noqa: E402
from mkey_exporter.models.rules import CacheKeyRecord, RuleGroup  # noqa: E402

# ---------------------------------------------------------------------------
# In-memory cache pool
# ---------------------------------------------------------------------------


class FakeClient:
    def __init__(self, host: str, pool: FakePool) -> None:
        self.host = host
        self._pool = pool

    async def fetch_keys(self) -> list[CacheKeyRecord]:
        pool = self._pool
        pool.fetches += 1
        pool.in_flight += 1
        pool.max_in_flight = max(pool.max_in_flight, pool.in_flight)
        try:
            pool.fetch_started.set()
            if pool.hang:
                await asyncio.Event().wait()
            await asyncio.sleep(0)
            if pool.fetch_error is not None:
                raise pool.fetch_error
            return list(pool.records)
        finally:
            pool.in_flight -= 1


class FakePool:
    """Stands in for MemcachedPool/RedisPool; records every call."""

    def __init__(self, records: list[CacheKeyRecord] | None = None) -> None:
        self.records = list(records or [])
        self.get_error: Exception | None = None
        self.fetch_error: Exception | None = None
        self.hang = False
        self.fetch_started = asyncio.Event()
        self.gets = 0
        self.puts = 0
        self.discards = 0
        self.fetches = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def get(self, host: str) -> FakeClient:
        self.gets += 1
        if self.get_error is not None:
            raise self.get_error
        return FakeClient(host, self)

    async def put(self, client: FakeClient) -> None:
        self.puts += 1

    async def discard(self, client: FakeClient) -> None:
        self.discards += 1

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values: dict = {
        "app_env": "test",
        "log_level": "info",
        "log_json": False,
        "bind_host": "127.0.0.1",
        "port": 9761,
        "cache_backend": "memcached",
        "cache_host": "cache.test:11211",
        "cache_timeout_secs": 5.0,
        "refresh_secs": 60.0,
        "shutdown_grace_secs": 1.0,
        "rules_path": None,
    }
    values.update(overrides)
    return Settings(**values)


def make_group(name: str, *rules: tuple[str, str, str]) -> RuleGroup:
    """Build a RuleGroup from (pattern, label_name, label_value) triples."""
    data = {
        "groups": [
            {
                "name": name,
                "rules": [
                    {"pattern": p, "label_name": n, "label_value": v}
                    for p, n, v in rules
                ],
            }
        ]
    }
    return build_groups(data)[0]


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def metrics() -> ExporterMetrics:
    # Fresh registry per test: no cross-test counter pollution.
    return ExporterMetrics()


@pytest.fixture
def fake_pool() -> FakePool:
    return FakePool(
        [
            CacheKeyRecord(key="prefix1:user1:something-else-whatever:12345", size=320),
            CacheKeyRecord(key="prefix2:user1:something-else-whatever:12345", size=45),
            CacheKeyRecord(key="prefix2:user2:something-else-again:56789", size=210),
            CacheKeyRecord(key="prefix3:user1:something-else-whatever:12345", size=42115),
            CacheKeyRecord(key="prefix3:user2:something-else-again:56789", size=1848),
            CacheKeyRecord(key="prefix3:user1:something-else-whatever:123456", size=38),
            CacheKeyRecord(key="nocolons", size=7),
        ]
    )


@pytest.fixture
def default_group() -> RuleGroup:
    return make_group(
        "default",
        (r"^.+:([\w]+):", "user", "$1"),
        (r"^([\w]+):", "type", "$1"),
    )
