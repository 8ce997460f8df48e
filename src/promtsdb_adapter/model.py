from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from promtsdb_adapter.matcher import LabelMatcher

METRIC_NAME_LABEL = "__name__"

# Tag values and metric names travel as plain strings on both paths.
TagValue = str


# --- canonical (Prometheus side) ---


@dataclass(frozen=True)
class Label:
    name: str
    value: str


@dataclass(frozen=True)
class Sample:
    timestamp_ms: int
    value: float


@dataclass
class TimeSeries:
    """One canonical series: label set plus samples ascending by timestamp."""

    labels: List[Label]
    samples: List[Sample] = field(default_factory=list)

    def label_map(self) -> Dict[str, str]:
        return {lbl.name: lbl.value for lbl in self.labels}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "labels": self.label_map(),
            "samples": [[s.timestamp_ms, s.value] for s in self.samples],
        }


@dataclass(frozen=True)
class Query:
    start_timestamp_ms: int
    end_timestamp_ms: int
    matchers: Sequence[LabelMatcher] = ()


@dataclass(frozen=True)
class WriteSample:
    """A single sample on the write path. `labels` includes __name__."""

    labels: Dict[str, str]
    timestamp_ms: int
    value: float

    @property
    def metric(self) -> TagValue:
        return self.labels.get(METRIC_NAME_LABEL, "")


# --- OpenTSDB wire models ---

FilterType = Literal["literal_or", "not_literal_or"]

FILTER_LITERAL_OR: FilterType = "literal_or"
FILTER_NOT_LITERAL_OR: FilterType = "not_literal_or"


class TagFilter(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: FilterType
    tagk: str
    filter: str
    # Always true so OpenTSDB returns one result per distinct tag set.
    group_by: bool = Field(default=True, alias="groupBy")


class SubQuery(BaseModel):
    metric: TagValue
    filters: List[TagFilter] = Field(default_factory=list)
    aggregator: str = Field(default="none")


class QueryRequest(BaseModel):
    """Body of POST /api/query (one descriptor per Prometheus query)."""

    start: int
    end: int
    queries: List[SubQuery]


class QueryResultFragment(BaseModel):
    """One element of the /api/query response array.

    dps keys are JSON strings on the wire and are coerced to int seconds.
    Fields we do not use (aggregateTags, annotations, ...) are ignored.
    """

    metric: TagValue
    tags: Dict[str, TagValue] = Field(default_factory=dict)
    dps: Dict[int, float] = Field(default_factory=dict)

    @field_validator("tags", "dps", mode="before")
    @classmethod
    def _null_as_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class PutRequest(BaseModel):
    """One element of the POST /api/put body."""

    metric: TagValue
    timestamp: int
    value: float
    tags: Dict[str, TagValue]
