"""The refresh loop: fetch -> classify -> aggregate -> reconcile -> publish.

RUN:  started by the FastAPI lifespan (see main.py), one task per process.

THE CYCLE
---------
  1. Borrow a client for the cache host from the pool.
  2. Fetch metadata for every key.
  3. For every rule group: aggregate the keys, reconcile against the
     previous cycle, publish upserts and deletes.
  4. Record success + duration, return the client to the pool.

If step 1 or 2 fails, the cycle is abandoned: a failure is counted and
logged, and nothing that was published before is touched.  The next tick
simply tries again; there is no backoff beyond the refresh interval.

SCHEDULING
----------
The first cycle runs immediately.  After that, cycles start every
`interval` seconds measured from the start of the previous one.  Cycles
never overlap: a cycle that overruns its slot is followed immediately by
the next one, and missed slots are dropped rather than replayed.

This task is the only writer of the key series and the only owner of the
reconcilers' state, so none of that needs locking.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from mkey_exporter.core.metrics import ExporterMetrics
from mkey_exporter.db.pool import ClientPool, KeyMetadataClient
from mkey_exporter.models.rules import CacheKeyRecord, RuleGroup
from mkey_exporter.services.aggregator import aggregate
from mkey_exporter.services.classifier import LabelClassifier
from mkey_exporter.services.reconciler import Reconciler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RefreshStatus:
    """Snapshot of how the loop is doing, for /health and /ready."""

    cycles: int = 0
    failures: int = 0
    last_success: float | None = None
    last_failure: float | None = None
    last_error: str | None = None
    last_ok: bool = True
    label_sets: dict[str, int] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.last_ok


class RefreshLoop:
    def __init__(
        self,
        *,
        host: str,
        pool: ClientPool,
        groups: Sequence[RuleGroup],
        metrics: ExporterMetrics,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._host = host
        self._pool = pool
        self._metrics = metrics
        self._interval = interval
        self._clock = clock
        self._groups = [
            (LabelClassifier(g), Reconciler(metrics.sink(g.name), g.name)) for g in groups
        ]
        self.status = RefreshStatus()

    @property
    def host(self) -> str:
        return self._host

    def reconciler(self, group: str) -> Reconciler:
        for classifier, reconciler in self._groups:
            if classifier.group.name == group:
                return reconciler
        raise KeyError(group)

    def _record_failure(self, what: str, exc: BaseException) -> None:
        self._metrics.record_failure()
        self.status.cycles += 1
        self.status.failures += 1
        self.status.last_failure = time.time()
        self.status.last_error = f"{what}: {exc}"
        self.status.last_ok = False

    async def _discard(self, client: KeyMetadataClient) -> None:
        try:
            await self._pool.discard(client)
        except Exception:
            logger.warning(
                "Failed to close client for %s", self._host, exc_info=True,
                extra={"host": self._host},
            )

    async def _release(self, client: KeyMetadataClient) -> None:
        try:
            await self._pool.put(client)
        except Exception:
            logger.warning(
                "Failed to return client for %s to the pool", self._host, exc_info=True,
                extra={"host": self._host},
            )

    def _publish(self, records: list[CacheKeyRecord]) -> None:
        for classifier, reconciler in self._groups:
            current = aggregate(records, classifier)
            reconciler.apply(current)
            self.status.label_sets[classifier.group.name] = len(current)

    async def run_once(self) -> bool:
        """Run one full cycle.  Returns True on success; never raises except on cancel."""
        start = self._clock()

        try:
            client = await self._pool.get(self._host)
        except Exception as exc:
            logger.warning(
                "Failed to connect to cache server %s: %s", self._host, exc,
                extra={"host": self._host},
            )
            self._record_failure("connect", exc)
            return False

        try:
            records = await client.fetch_keys()
        except asyncio.CancelledError:
            await self._discard(client)
            raise
        except Exception as exc:
            logger.warning(
                "Failed to fetch key metadata from %s: %s", self._host, exc,
                extra={"host": self._host},
            )
            await self._discard(client)
            self._record_failure("fetch", exc)
            return False

        try:
            self._publish(records)
        except Exception as exc:
            logger.exception(
                "Unexpected error publishing keys from %s", self._host,
                extra={"host": self._host},
            )
            await self._release(client)
            self._record_failure("publish", exc)
            return False

        duration = self._clock() - start
        self._metrics.record_success(duration)
        self.status.cycles += 1
        self.status.last_success = time.time()
        self.status.last_error = None
        self.status.last_ok = True
        await self._release(client)

        logger.info(
            "Refreshed %d keys from %s in %.1fms",
            len(records),
            self._host,
            duration * 1000,
            extra={
                "host": self._host,
                "keys": len(records),
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return True

    async def run(self, stop: asyncio.Event) -> None:
        logger.info(
            "Refresh loop started  host=%s interval=%.1fs groups=%s",
            self._host,
            self._interval,
            [c.group.name for c, _ in self._groups],
        )

        next_tick = self._clock()
        while not stop.is_set():
            await self.run_once()

            next_tick += self._interval
            now = self._clock()
            if next_tick < now:
                next_tick = now
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=next_tick - now)

        logger.info("Refresh loop stopped")


@asynccontextmanager
async def lifespan_refresh(
    loop: RefreshLoop, pool: ClientPool, *, grace: float
) -> AsyncIterator[asyncio.Task[None]]:
    """Run the refresh loop in the background for the lifetime of the block.

    On exit: signal the loop to stop, give an in-flight cycle `grace`
    seconds to finish, cancel it otherwise, wait for the task, and only
    then close the pool.  No cycle publishes after this returns.
    """
    stop = asyncio.Event()
    task = asyncio.create_task(loop.run(stop), name="mkey-refresh")

    try:
        yield task
    finally:
        stop.set()
        done, _ = await asyncio.wait({task}, timeout=grace)
        if not done:
            logger.warning(
                "Refresh cycle still running after %.1fs, cancelling", grace,
                extra={"host": loop.host},
            )
            task.cancel()

        try:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        except Exception:
            logger.exception("Refresh loop exited with an error", extra={"host": loop.host})
        finally:
            await pool.close()
            logger.info("Cache client pool closed")
