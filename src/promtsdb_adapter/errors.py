from __future__ import annotations

from typing import Optional


class AdapterError(Exception):
    """Base class for all adapter failures."""


class TranslationError(AdapterError):
    """A Prometheus query cannot be expressed as an OpenTSDB query."""


class TransportError(AdapterError):
    """The backend could not be reached (connect, TLS, read timeout)."""


class BackendStatusError(AdapterError):
    def __init__(self, status_code: int, body: Optional[str] = None) -> None:
        msg = f"unexpected status code from OpenTSDB: {status_code}"
        if body:
            msg = f"{msg}: {body}"
        super().__init__(msg)
        self.status_code = status_code
        self.body = body


class DeserializationError(AdapterError):
    """The backend answered with a body that is not the expected JSON."""


class DeadlineExceededError(AdapterError):
    def __init__(self, timeout_s: float) -> None:
        super().__init__(f"read deadline of {timeout_s:.3f}s exceeded")
        self.timeout_s = timeout_s
