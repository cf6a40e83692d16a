from __future__ import annotations

from collections.abc import Iterable

from mkey_exporter.models.rules import Aggregate, CacheKeyRecord, LabelSet
from mkey_exporter.services.classifier import LabelClassifier


def aggregate(
    records: Iterable[CacheKeyRecord], classifier: LabelClassifier
) -> dict[LabelSet, Aggregate]:
    """Count keys and sum their sizes per label set, in a single pass.

    Callers must not rely on the iteration order of the result.
    """
    buckets: dict[LabelSet, Aggregate] = {}

    for record in records:
        labels = classifier.extract(record.key)
        bucket = buckets.get(labels)
        if bucket is None:
            bucket = buckets[labels] = Aggregate()
        bucket.count += 1
        bucket.total_size += record.size

    return buckets
