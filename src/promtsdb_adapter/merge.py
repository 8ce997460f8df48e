from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping

from promtsdb_adapter.model import METRIC_NAME_LABEL, Label, QueryResultFragment, Sample, TimeSeries
from promtsdb_adapter.series_key import series_key

logger = logging.getLogger(__name__)


@dataclass
class SeriesAccumulator:
    """Merged state of one logical series during a read call."""

    metric: str
    tags: Dict[str, str]
    samples: List[Sample] = field(default_factory=list)


Accumulator = Dict[bytes, SeriesAccumulator]


def fragment_samples(dps: Mapping[int, float]) -> List[Sample]:
    """Convert an OpenTSDB dps mapping (seconds -> value) to sorted samples in ms."""

    samples = [Sample(timestamp_ms=int(t) * 1000, value=float(v)) for t, v in dps.items()]
    samples.sort(key=lambda s: (s.timestamp_ms, s.value))
    return samples


def merge_samples(existing: List[Sample], incoming: List[Sample]) -> List[Sample]:
    """Merge two timestamp-sorted sample lists and drop duplicate timestamps.

    On equal timestamps the sample from `existing` is kept.
    """

    out: List[Sample] = []
    i, j = 0, 0
    while i < len(existing) and j < len(incoming):
        a, b = existing[i], incoming[j]
        if a.timestamp_ms < b.timestamp_ms:
            out.append(a)
            i += 1
        elif a.timestamp_ms > b.timestamp_ms:
            out.append(b)
            j += 1
        else:
            out.append(a)
            i += 1
            j += 1
    out.extend(existing[i:])
    out.extend(incoming[j:])
    return out


def fold_fragment(acc: Accumulator, fragment: QueryResultFragment) -> None:
    key = series_key(fragment.tags)
    entry = acc.get(key)
    if entry is None:
        entry = SeriesAccumulator(metric=fragment.metric, tags=dict(fragment.tags))
        acc[key] = entry
    elif entry.metric != fragment.metric:
        # Not expected from a well-behaved backend; the first metric is retained.
        logger.warning(
            "Conflicting metric names for tag set %s: keeping %r, ignoring %r.",
            entry.tags,
            entry.metric,
            fragment.metric,
        )

    entry.samples = merge_samples(entry.samples, fragment_samples(fragment.dps))


def fold_fragments(acc: Accumulator, fragments: Iterable[QueryResultFragment]) -> None:
    for fragment in fragments:
        fold_fragment(acc, fragment)


def to_time_series(entry: SeriesAccumulator) -> TimeSeries:
    labels = [Label(name=k, value=v) for k, v in entry.tags.items()]
    labels.append(Label(name=METRIC_NAME_LABEL, value=entry.metric))
    labels.sort(key=lambda lbl: lbl.name)
    return TimeSeries(labels=labels, samples=list(entry.samples))


def assemble(acc: Accumulator) -> List[TimeSeries]:
    """Flatten the accumulator. Output order is unspecified."""

    return [to_time_series(entry) for entry in acc.values()]
