from __future__ import annotations

from typing import List, Optional, Sequence

from promtsdb_adapter.errors import TranslationError
from promtsdb_adapter.matcher import MatchType
from promtsdb_adapter.model import (
    FILTER_LITERAL_OR,
    FILTER_NOT_LITERAL_OR,
    METRIC_NAME_LABEL,
    Query,
    QueryRequest,
    SubQuery,
    TagFilter,
)

# Server-side aggregation would collapse tag sets and break series identity.
NO_AGGREGATION = "none"


def to_tag_value(value: str, default_tag_value: str) -> str:
    """Map an empty label value to the placeholder stored in OpenTSDB."""

    return value if value else default_tag_value


def translate_query(query: Query, *, default_tag_value: str) -> QueryRequest:
    """Translate one Prometheus query into an OpenTSDB /api/query body.

    Rules:
    - the __name__ matcher must be present, unique and of type "="
    - "=" and "!=" on other labels become literal_or / not_literal_or filters
      with groupBy enabled
    - regex matchers are rejected (OpenTSDB filters cannot evaluate them here)
    - millisecond bounds are floored to seconds
    """

    metric: Optional[str] = None
    filters: List[TagFilter] = []

    for m in query.matchers:
        if m.name == METRIC_NAME_LABEL:
            if m.type is not MatchType.EQUAL:
                raise TranslationError(
                    f"metric name matcher not representable: {m} (only '=' is supported)"
                )
            if metric is not None:
                raise TranslationError(f"duplicate metric name matcher: {m}")
            metric = m.value
            continue

        if m.type is MatchType.EQUAL:
            filter_type = FILTER_LITERAL_OR
        elif m.type is MatchType.NOT_EQUAL:
            filter_type = FILTER_NOT_LITERAL_OR
        elif m.type.is_regex:
            raise TranslationError(f"regex matchers not supported by this backend: {m}")
        else:
            raise TranslationError(f"unknown match type {m.type!r}")

        filters.append(
            TagFilter(
                type=filter_type,
                tagk=m.name,
                filter=to_tag_value(m.value, default_tag_value),
                group_by=True,
            )
        )

    if metric is None:
        raise TranslationError("query has no metric name matcher")

    return QueryRequest(
        start=query.start_timestamp_ms // 1000,
        end=query.end_timestamp_ms // 1000,
        queries=[SubQuery(metric=metric, filters=filters, aggregator=NO_AGGREGATION)],
    )


def translate_queries(queries: Sequence[Query], *, default_tag_value: str) -> List[QueryRequest]:
    # First failure aborts the whole set; nothing is sent for a partial set.
    return [translate_query(q, default_tag_value=default_tag_value) for q in queries]
