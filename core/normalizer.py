"""
normalizer.py
--------------
Turns a raw transaction description / merchant string into the canonical
grouping key used by the matcher.

    "Netflix.com *123"  ->  "netflix com"
    "NETFLIX.COM"       ->  "netflix com"

Pure and total: never raises, never does I/O.
"""

import re
from typing import Any


_DATE_PATTERNS = [
    re.compile(r"\b\d{4}-\d{1,2}-\d{1,2}\b"),           # 2024-01-15
    re.compile(r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b"),     # 01/15, 01/15/24
]

_NOISE_PATTERNS = [
    re.compile(r"\b(?:x{2,}|\*{2,})\d+\b"),             # xxxx1234, ****1234
    re.compile(r"\*+\w*"),                              # *123, AMZN*2K4
    re.compile(r"#\s*\d+"),                             # store / reference numbers
    re.compile(r"\d{4,}"),                              # long digit runs
]

_PUNCTUATION = re.compile(r"[^\w\s&+]")
_WHITESPACE = re.compile(r"\s+")


def _collapse(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def normalize(raw_text: Any) -> str:
    """
    Canonical grouping key for a transaction description.

    Lowercases, removes dates, masked card fragments, long digit runs and
    reference numbers, replaces punctuation (except & and +) with spaces and
    collapses whitespace. Blank input gives "". If stripping leaves nothing
    of a non-blank input, the lowercased, whitespace-collapsed original is
    returned instead.
    """
    if raw_text is None:
        return ""
    text = str(raw_text).lower()
    original = _collapse(text)
    if not original:
        return ""

    for pattern in _DATE_PATTERNS:
        text = pattern.sub(" ", text)
    for pattern in _NOISE_PATTERNS:
        text = pattern.sub(" ", text)
    text = _PUNCTUATION.sub(" ", text)
    text = _collapse(text)

    return text or original
