"""Text helpers shared by the feed converter and the enrichment stages."""

from __future__ import annotations

import html
import math
import re

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_EDGE_SEPARATORS_RE = re.compile(r"^[\s\-–—|:;·•]+|[\s\-–—|:;·•]+$")
_REPEATED_LAST_WORD_RE = re.compile(r"\b(\w+)(\s+\1)+$", re.IGNORECASE)


def collapse_whitespace(text: str | None) -> str:
    if not text:
        return ""
    return _WS_RE.sub(" ", text.replace("\u00a0", " ")).strip()


def strip_html(text: str | None) -> str:
    """Drop markup and entities, leaving whitespace-collapsed plain text."""
    if not text:
        return ""
    return collapse_whitespace(html.unescape(_TAG_RE.sub(" ", text)))


def parse_decimal(value: str | None) -> float | None:
    """Parse a number that may use a decimal comma. Returns None when unparseable."""
    if value is None:
        return None
    cleaned = str(value).strip().replace(",", ".")
    if not cleaned:
        return None
    try:
        number = float(cleaned)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_int(value: str | None) -> int | None:
    number = parse_decimal(value)
    if number is None or number != int(number):
        return None
    return int(number)


def sanitize_title(text: str | None) -> str:
    """Clean a display title of separator debris and an accidentally repeated last word.

    Falls back to the trimmed input when cleaning would leave nothing.
    """
    if text is None:
        return ""
    original = text.strip()
    cleaned = collapse_whitespace(text)
    # Two passes so "- | Foo |" style debris disappears completely.
    for _ in range(2):
        cleaned = _EDGE_SEPARATORS_RE.sub("", cleaned)
    cleaned = _REPEATED_LAST_WORD_RE.sub(r"\1", cleaned)
    cleaned = collapse_whitespace(cleaned)
    return cleaned or original
