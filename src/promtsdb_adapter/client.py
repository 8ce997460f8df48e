from __future__ import annotations

import logging
import math
from typing import Any, List, Optional, Sequence, Tuple

import requests
from pydantic import TypeAdapter, ValidationError

from promtsdb_adapter import __version__
from promtsdb_adapter.config import OpenTSDBConfig
from promtsdb_adapter.errors import BackendStatusError, DeserializationError, TransportError
from promtsdb_adapter.fanout import execute
from promtsdb_adapter.merge import assemble
from promtsdb_adapter.model import (
    METRIC_NAME_LABEL,
    PutRequest,
    Query,
    QueryRequest,
    QueryResultFragment,
    TimeSeries,
    WriteSample,
)
from promtsdb_adapter.translate import to_tag_value, translate_queries

logger = logging.getLogger(__name__)

# http://opentsdb.net/docs/build/html/api_http/put.html
PUT_ENDPOINT = "/api/put"
QUERY_ENDPOINT = "/api/query"

_WRITE_OK = {200, 204}

_FRAGMENTS = TypeAdapter(List[QueryResultFragment])


def parse_query_response(payload: Any) -> List[QueryResultFragment]:
    """Validate the decoded /api/query body (a JSON array of result objects)."""

    if not isinstance(payload, list):
        raise DeserializationError(
            f"OpenTSDB query response must be a JSON array, got {type(payload).__name__}"
        )
    try:
        return _FRAGMENTS.validate_python(payload)
    except ValidationError as exc:
        raise DeserializationError(f"Invalid OpenTSDB query response: {exc}") from exc


class OpenTSDBClient:
    """Reads and writes Prometheus samples through the OpenTSDB HTTP API."""

    def __init__(self, config: OpenTSDBConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session if session is not None else self._create_session()
        self._base_url = config.url.rstrip("/")

        logger.debug(
            "OpenTSDBClient initialized: url=%s, timeout_s=%.1f",
            self._base_url,
            config.timeout_s,
        )

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": f"promtsdb-adapter/{__version__}",
            }
        )
        session.verify = self.config.verify_tls
        return session

    def name(self) -> str:
        return "opentsdb"

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> OpenTSDBClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # --- transport ---

    def _timeout(self, read_timeout_s: float) -> Tuple[float, float]:
        # requests' timeout can be (connect, read)
        return (min(self.config.connect_timeout_s, read_timeout_s), read_timeout_s)

    def _post(self, path: str, payload: Any, *, timeout_s: float) -> requests.Response:
        url = f"{self._base_url}{path}"
        try:
            resp = self.session.post(url, json=payload, timeout=self._timeout(timeout_s))
        except requests.exceptions.Timeout as exc:
            raise TransportError(f"OpenTSDB request timed out after {timeout_s:.3f}s: POST {url}") from exc
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"OpenTSDB request failed: POST {url}: {exc}") from exc

        logger.debug("OpenTSDB POST %s -> %d", path, resp.status_code)
        return resp

    # --- write path ---

    def build_put_requests(self, samples: Sequence[WriteSample]) -> List[PutRequest]:
        """Map samples to /api/put objects. NaN and +/-Inf values are dropped."""

        reqs: List[PutRequest] = []
        for s in samples:
            v = float(s.value)
            if math.isnan(v) or math.isinf(v):
                logger.debug("Skipping sample with non-finite value %r for %s.", v, s.metric)
                continue
            tags = {
                k: to_tag_value(val, self.config.default_tag_value)
                for k, val in s.labels.items()
                if k != METRIC_NAME_LABEL
            }
            reqs.append(PutRequest(metric=s.metric, timestamp=s.timestamp_ms // 1000, value=v, tags=tags))
        return reqs

    def write(self, samples: Sequence[WriteSample]) -> int:
        """Send one batch to /api/put. Returns the number of samples transmitted."""

        reqs = self.build_put_requests(samples)
        if not reqs:
            return 0

        resp = self._post(
            PUT_ENDPOINT + "?summary",
            [r.model_dump() for r in reqs],
            timeout_s=self.config.timeout_s,
        )
        if resp.status_code in _WRITE_OK:
            return len(reqs)

        # OpenTSDB answers 400 with error details as JSON in the body.
        logger.warning("Failed to write %d samples to OpenTSDB (HTTP %d): %s", len(reqs), resp.status_code, resp.text)
        raise BackendStatusError(resp.status_code, resp.text)

    # --- read path ---

    def _query(self, descriptor: QueryRequest, timeout_s: float) -> List[QueryResultFragment]:
        resp = self._post(QUERY_ENDPOINT, descriptor.model_dump(by_alias=True), timeout_s=timeout_s)
        if resp.status_code != 200:
            logger.warning("OpenTSDB query failed (HTTP %d): %s", resp.status_code, resp.text)
            raise BackendStatusError(resp.status_code, resp.text)

        try:
            payload = resp.json()
        except ValueError as exc:
            raise DeserializationError(f"OpenTSDB returned invalid JSON: {exc}") from exc
        return parse_query_response(payload)

    def read(self, queries: Sequence[Query]) -> List[TimeSeries]:
        """Run all queries concurrently and return the merged series.

        Any translation error, failed backend call or deadline expiry fails the
        whole call; partial results are never returned.
        """

        descriptors = translate_queries(queries, default_tag_value=self.config.default_tag_value)
        merged = execute(
            descriptors,
            self._query,
            timeout_s=self.config.timeout_s,
            max_workers=self.config.max_in_flight,
        )
        return assemble(merged)
