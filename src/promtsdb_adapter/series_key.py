from __future__ import annotations

from typing import Mapping

# 0xFF never occurs in UTF-8 encoded text, so it cannot be confused with
# tag content.
SEPARATOR = b"\xff"


def _encode(text: str) -> bytes:
    return text.encode("utf-8", "surrogatepass")


def series_key(tags: Mapping[str, str]) -> bytes:
    """Canonical identity of a tag set (metric name excluded).

    Pairs are sorted by tag key so equal tag sets give byte-identical keys
    regardless of mapping order.
    """

    pairs = [_encode(k) + SEPARATOR + _encode(v) for k, v in sorted(tags.items())]
    return SEPARATOR.join(pairs)
