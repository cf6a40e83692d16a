from __future__ import annotations

import pytest

from mkey_exporter.models.rules import Aggregate, LabelSet
from mkey_exporter.services.reconciler import Reconciler, reconcile

CART: LabelSet = (("type", "cart"),)
PROFILE: LabelSet = (("type", "profile"),)
UNMATCHED: LabelSet = ()


class RecordingSink:
    def __init__(self) -> None:
        self.series: dict[LabelSet, tuple[int, int]] = {}
        self.upserts: list[LabelSet] = []
        self.deletes: list[LabelSet] = []

    def upsert(self, labels: LabelSet, count: int, size: int) -> None:
        self.upserts.append(labels)
        self.series[labels] = (count, size)

    def delete(self, labels: LabelSet) -> bool:
        self.deletes.append(labels)
        return self.series.pop(labels, None) is not None


# ---- pure diff ----


def test_reconcile_splits_live_and_stale() -> None:
    current = {CART: Aggregate(1, 10)}
    plan = reconcile(current, {CART, PROFILE})
    assert plan.to_upsert is current
    assert plan.to_delete == frozenset({PROFILE})


def test_reconcile_does_not_mutate_previous_universe() -> None:
    previous = {CART, PROFILE}
    reconcile({}, previous)
    assert previous == {CART, PROFILE}


def test_reconcile_never_deletes_a_live_label_set() -> None:
    current = {CART: Aggregate(1, 1), UNMATCHED: Aggregate(2, 2)}
    plan = reconcile(current, {CART, PROFILE, UNMATCHED})
    assert plan.to_delete.isdisjoint(current)


def test_reconcile_first_cycle_deletes_nothing() -> None:
    plan = reconcile({CART: Aggregate(1, 1)}, set())
    assert plan.to_delete == frozenset()


def test_reconcile_is_order_sensitive() -> None:
    ab: LabelSet = (("a", "1"), ("b", "2"))
    ba: LabelSet = (("b", "2"), ("a", "1"))
    plan = reconcile({ba: Aggregate(1, 1)}, {ab})
    assert plan.to_delete == frozenset({ab})


# ---- apply across cycles ----


def test_stale_label_set_is_deleted_next_cycle() -> None:
    sink = RecordingSink()
    reconciler = Reconciler(sink)

    reconciler.apply({CART: Aggregate(2, 20), PROFILE: Aggregate(1, 5)})
    assert reconciler.universe == {CART, PROFILE}

    plan = reconciler.apply({CART: Aggregate(3, 30)})
    assert plan.to_delete == frozenset({PROFILE})
    assert PROFILE not in reconciler.universe
    assert sink.series == {CART: (3, 30)}


def test_live_label_set_is_updated_not_deleted() -> None:
    sink = RecordingSink()
    reconciler = Reconciler(sink)

    reconciler.apply({CART: Aggregate(2, 20)})
    plan = reconciler.apply({CART: Aggregate(5, 99)})

    assert CART not in plan.to_delete
    assert sink.series[CART] == (5, 99)
    assert sink.deletes == []


def test_empty_cycle_removes_everything() -> None:
    sink = RecordingSink()
    reconciler = Reconciler(sink)

    reconciler.apply({CART: Aggregate(1, 1), UNMATCHED: Aggregate(1, 1)})
    reconciler.apply({})

    assert sink.series == {}
    assert reconciler.universe == frozenset()


def test_label_set_can_come_back_after_deletion() -> None:
    sink = RecordingSink()
    reconciler = Reconciler(sink)

    reconciler.apply({CART: Aggregate(1, 1)})
    reconciler.apply({})
    reconciler.apply({CART: Aggregate(4, 4)})

    assert sink.series == {CART: (4, 4)}
    assert reconciler.universe == {CART}


def test_universe_is_a_fresh_set_each_cycle() -> None:
    reconciler = Reconciler(RecordingSink())
    reconciler.apply({CART: Aggregate(1, 1)})
    first = reconciler._universe
    reconciler.apply({CART: Aggregate(1, 1)})
    assert reconciler._universe is not first


class FailingSink(RecordingSink):
    def __init__(self, bad: LabelSet) -> None:
        super().__init__()
        self.bad = bad

    def upsert(self, labels: LabelSet, count: int, size: int) -> None:
        if labels == self.bad:
            raise RuntimeError("sink exploded")
        super().upsert(labels, count, size)


def test_partly_published_cycle_is_cleaned_up_later() -> None:
    new: LabelSet = (("type", "new"),)
    bad: LabelSet = (("type", "bad"),)
    sink = FailingSink(bad)
    reconciler = Reconciler(sink)

    reconciler.apply({CART: Aggregate(1, 1)})
    with pytest.raises(RuntimeError):
        reconciler.apply({new: Aggregate(1, 1), bad: Aggregate(1, 1)})

    assert new in reconciler.universe
    assert CART in reconciler.universe

    reconciler.apply({})
    assert sink.series == {}
    assert reconciler.universe == frozenset()
