"""Exporter metrics: the published key series plus the exporter's own telemetry.

Everything lives in one CollectorRegistry owned by the application (see
create_app in main.py).  The refresh loop writes, the /metrics route reads.

TWO KINDS OF SERIES
-------------------
1. Static telemetry, declared up front with prometheus_client types:

     mkey_updates_total{result="success"|"failure"}   counter
     mkey_updates_duration_seconds                    histogram
     mkey_num_rules{rule_group}                       gauge
     mkey_last_success_timestamp_seconds              gauge

2. Key series, whose label NAMES depend on which rules matched:

     mkey_cache_counts{rule_group="default",user="u1",type="prefix1"} 3
     mkey_cache_sizes{rule_group="default",user="u1",type="prefix1"}  405

   prometheus_client's Gauge needs label names fixed at creation time,
   so these are served by a custom collector (LabelSetCollector) that
   renders whatever label sets it currently holds.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterable, Iterator

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector

from mkey_exporter.core.rules import GROUP_LABEL
from mkey_exporter.models.rules import LabelSet, RuleGroup

# Update loops can take anywhere from milliseconds (small cache) to
# minutes (millions of keys over a slow link).
DURATION_BUCKETS = [0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0, 50.0, 100.0, 250.0]

SeriesKey = tuple[str, LabelSet]


class LabelSetCollector(Collector):
    """Holds the current count/size per (rule group, label set).

    Many readers (scrapes) and one writer (the refresh loop) share this
    object; every access goes through the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._series: dict[SeriesKey, tuple[int, int]] = {}

    def upsert(self, group: str, labels: LabelSet, count: int, size: int) -> None:
        with self._lock:
            self._series[(group, labels)] = (count, size)

    def delete(self, group: str, labels: LabelSet) -> bool:
        with self._lock:
            return self._series.pop((group, labels), None) is not None

    def label_sets(self, group: str) -> list[LabelSet]:
        with self._lock:
            return [labels for g, labels in self._series if g == group]

    def collect(self) -> Iterator[GaugeMetricFamily]:
        with self._lock:
            snapshot = list(self._series.items())

        counts = GaugeMetricFamily(
            "mkey_cache_counts", "Counts of keys matching the configured rules"
        )
        sizes = GaugeMetricFamily(
            "mkey_cache_sizes", "Total size in bytes of keys matching the configured rules"
        )
        for (group, labels), (count, size) in snapshot:
            sample_labels = {GROUP_LABEL: group, **dict(labels)}
            counts.add_sample("mkey_cache_counts", sample_labels, count)
            sizes.add_sample("mkey_cache_sizes", sample_labels, size)

        yield counts
        yield sizes


class GroupSink:
    """The slice of the key series belonging to one rule group."""

    def __init__(self, collector: LabelSetCollector, group: str) -> None:
        self._collector = collector
        self.group = group

    def upsert(self, labels: LabelSet, count: int, size: int) -> None:
        self._collector.upsert(self.group, labels, count, size)

    def delete(self, labels: LabelSet) -> bool:
        return self._collector.delete(self.group, labels)


class ExporterMetrics:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self.updates = Counter(
            "mkey_updates",
            "How many update loops have been run, by result",
            ["result"],
            registry=self.registry,
        )
        self.duration = Histogram(
            "mkey_updates_duration_seconds",
            "How long successful update loops take in seconds",
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.num_rules = Gauge(
            "mkey_num_rules",
            "Number of configured rules per rule group",
            ["rule_group"],
            registry=self.registry,
        )
        self.last_success = Gauge(
            "mkey_last_success_timestamp_seconds",
            "Unix time of the last successful update loop",
            registry=self.registry,
        )
        self.series = LabelSetCollector()
        self.registry.register(self.series)

        # Export both results at zero so rate() works from the first scrape.
        self.updates.labels(result="success")
        self.updates.labels(result="failure")

    def set_rules(self, groups: Iterable[RuleGroup]) -> None:
        for group in groups:
            self.num_rules.labels(rule_group=group.name).set(len(group.rules))

    def record_failure(self) -> None:
        self.updates.labels(result="failure").inc()

    def record_success(self, duration: float) -> None:
        self.duration.observe(duration)
        self.updates.labels(result="success").inc()
        self.last_success.set(time.time())

    def sink(self, group: str) -> GroupSink:
        return GroupSink(self.series, group)
