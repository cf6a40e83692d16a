"""Cycle-to-cycle reconciliation of published key series.

THE PROBLEM
-----------
Every cycle produces a fresh mapping of label set -> (count, size).  If we
only ever upserted, a label set that stopped matching any key (a user who
logged out, a key prefix that was retired) would keep exporting its last
value forever, and the number of series would grow without bound.

THE DIFF
--------
  previous universe : label sets published at the end of the last cycle
  current           : label sets produced by this cycle

  to_delete = previous - current
  to_upsert = current

After publishing, the universe is replaced by current's keys.  A label set
is never in both to_upsert and to_delete for the same cycle.

If a cycle's fetch fails, the refresh loop never calls apply(): the
previous universe and every published series stay as they were.  If the
sink raises halfway through apply(), the universe becomes previous | current
so that nothing already upserted is forgotten.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from mkey_exporter.models.rules import Aggregate, LabelSet

logger = logging.getLogger(__name__)


class SeriesSink(Protocol):
    def upsert(self, labels: LabelSet, count: int, size: int) -> None: ...
    def delete(self, labels: LabelSet) -> bool: ...


@dataclass(frozen=True, slots=True)
class ReconcilePlan:
    to_upsert: Mapping[LabelSet, Aggregate]
    to_delete: frozenset[LabelSet]


def reconcile(
    current: Mapping[LabelSet, Aggregate], previous_universe: set[LabelSet]
) -> ReconcilePlan:
    """Work out which series to upsert and which are stale.  Mutates nothing."""
    stale = set(previous_universe)
    for labels in current:
        stale.discard(labels)
    return ReconcilePlan(to_upsert=current, to_delete=frozenset(stale))


class Reconciler:
    """Owns the previous universe for one rule group and publishes to its sink."""

    def __init__(self, sink: SeriesSink, name: str = "") -> None:
        self._sink = sink
        self._name = name
        self._universe: set[LabelSet] = set()

    @property
    def universe(self) -> frozenset[LabelSet]:
        return frozenset(self._universe)

    def apply(self, current: Mapping[LabelSet, Aggregate]) -> ReconcilePlan:
        plan = reconcile(current, self._universe)

        removed = 0
        try:
            for labels, agg in plan.to_upsert.items():
                self._sink.upsert(labels, agg.count, agg.total_size)

            for labels in plan.to_delete:
                if self._sink.delete(labels):
                    removed += 1
        except Exception:
            # Partly published: keep tracking everything that may now be
            # exported so the next successful cycle can clean it up.
            self._universe = self._universe | set(current)
            raise

        # Fresh set each cycle so a one-off spike in cardinality does not
        # leave an oversized table behind.
        self._universe = set(current)

        logger.debug(
            "Reconciled label sets  upserted=%d stale=%d removed=%d",
            len(plan.to_upsert),
            len(plan.to_delete),
            removed,
            extra={
                "rule_group": self._name,
                "label_sets": len(plan.to_upsert),
                "deleted": removed,
            },
        )
        return plan
