from __future__ import annotations

import logging
import threading
import time
from concurrent import futures
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Sequence

from promtsdb_adapter.errors import DeadlineExceededError
from promtsdb_adapter.merge import Accumulator, fold_fragments
from promtsdb_adapter.model import QueryRequest, QueryResultFragment

logger = logging.getLogger(__name__)

# fetch(descriptor, remaining_timeout_s) -> fragments
Fetch = Callable[[QueryRequest, float], List[QueryResultFragment]]


class MergeState:
    """Accumulator shared by the query tasks of one read call.

    After close() every further fold is rejected, so tasks that finish late
    cannot change a result that has already been handed out.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._closed = False
        self._series: Accumulator = {}

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def fold(self, fragments: Iterable[QueryResultFragment]) -> bool:
        with self._lock:
            if self._closed:
                return False
            fold_fragments(self._series, fragments)
            return True

    def close(self) -> Accumulator:
        with self._lock:
            self._closed = True
            return self._series


def execute(
    descriptors: Sequence[QueryRequest],
    fetch: Fetch,
    *,
    timeout_s: float,
    max_workers: Optional[int] = None,
) -> Accumulator:
    """Run all descriptors concurrently and merge their fragments.

    Exactly one outcome per call:
      - every task succeeded: the merged accumulator is returned
      - a task failed: the first failure (in completion order) is raised
      - the deadline elapsed first: DeadlineExceededError is raised

    No partial result is ever returned. Tasks still running after the outcome
    is decided are abandoned and their fragments are dropped.
    """

    state = MergeState()
    if not descriptors:
        return state.close()

    deadline = time.monotonic() + timeout_s

    def _run(descriptor: QueryRequest) -> None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise DeadlineExceededError(timeout_s)
        fragments = fetch(descriptor, remaining)
        if not state.fold(fragments):
            logger.debug(
                "Dropping %d fragments for metric %s: read call already finished.",
                len(fragments),
                descriptor.queries[0].metric if descriptor.queries else "?",
            )

    workers = len(descriptors)
    if max_workers is not None:
        workers = max(1, min(max_workers, workers))

    logger.debug("Dispatching %d OpenTSDB queries on %d workers.", len(descriptors), workers)

    pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="opentsdb-query")
    pending = [pool.submit(_run, d) for d in descriptors]

    failure: Optional[BaseException] = None
    try:
        remaining = max(0.0, deadline - time.monotonic())
        for done in futures.as_completed(pending, timeout=remaining):
            failure = done.exception()
            if failure is not None:
                break
    except futures.TimeoutError:
        failure = DeadlineExceededError(timeout_s)
    finally:
        merged = state.close()
        pool.shutdown(wait=False, cancel_futures=True)

    if failure is not None:
        raise failure
    return merged
