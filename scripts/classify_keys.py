#!/usr/bin/env python3
"""Dry-run a rules file against a list of keys, without a cache server.

Run with:
    python scripts/classify_keys.py keys.txt
    python scripts/classify_keys.py --rules rules.json keys.txt
    printf 'user:123:cart 40\\n' | python scripts/classify_keys.py -

Each input line is a key, optionally followed by whitespace and its size in
bytes (size defaults to 0).  Prints every label set with its key count and
total size, largest count first, once per rule group.
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Iterable, Iterator

from mkey_exporter.core.rules import RuleConfigError, load_rules
from mkey_exporter.models.rules import CacheKeyRecord, LabelSet
from mkey_exporter.services.aggregator import aggregate
from mkey_exporter.services.classifier import LabelClassifier


def read_records(lines: Iterable[str]) -> Iterator[CacheKeyRecord]:
    for line in lines:
        line = line.strip()
        if not line:
            continue
        key, _, size = line.rpartition(" ")
        if key and size.isdigit():
            yield CacheKeyRecord(key=key.rstrip(), size=int(size))
        else:
            yield CacheKeyRecord(key=line, size=0)


def format_labels(labels: LabelSet) -> str:
    if not labels:
        return "{} (no rule matched)"
    return "{" + ",".join(f'{name}="{value}"' for name, value in labels) + "}"


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("keys", help="file with one key per line, or - for stdin")
    parser.add_argument("--rules", help="rules JSON file (default: built-in rules)")
    args = parser.parse_args()

    try:
        groups = load_rules(args.rules)
    except RuleConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.keys == "-":
        records = list(read_records(sys.stdin))
    else:
        with open(args.keys, encoding="utf-8") as f:
            records = list(read_records(f))

    print(f"{len(records)} keys")
    for group in groups:
        buckets = aggregate(records, LabelClassifier(group))
        print()
        print(f"[{group.name}] {len(buckets)} label sets")
        ranked = sorted(buckets.items(), key=lambda item: item[1].count, reverse=True)
        for labels, agg in ranked:
            print(f"  {agg.count:>8}  {agg.total_size:>12}B  {format_labels(labels)}")


if __name__ == "__main__":
    main()
