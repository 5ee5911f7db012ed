"""Quantity extraction from free-text captions.

Patterns are tried in a fixed order and the first one yielding a value in
``MIN_QUANTITY..MAX_QUANTITY`` wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

MIN_QUANTITY: Final[int] = 1
MAX_QUANTITY: Final[int] = 9999
APPROXIMATE_PENALTY: Final[float] = 0.8


@dataclass(frozen=True, slots=True)
class QuantityPattern:
    name: str
    regex: re.Pattern[str]
    confidence: float
    approximate: bool = False


@dataclass(frozen=True, slots=True)
class QuantityMatch:
    value: int
    pattern: str
    confidence: float
    is_approximate: bool
    start: int
    end: int


_UNITS = r"(?:pcs|pc|pieces|piece|units|unit)"

QUANTITY_PATTERNS: Final[tuple[QuantityPattern, ...]] = (
    QuantityPattern(
        "prefix",
        re.compile(r"\b(?:qty|quantity)\s*[:=]?\s*(\d+)", re.IGNORECASE),
        0.95,
    ),
    QuantityPattern(
        "x_prefix",
        re.compile(r"(?<![A-Za-z])[x×]\s*(\d+)\b", re.IGNORECASE),
        0.9,
    ),
    QuantityPattern(
        "x_suffix",
        re.compile(r"\b(\d+)\s*[x×](?![A-Za-z0-9])", re.IGNORECASE),
        0.9,
    ),
    QuantityPattern(
        "units",
        re.compile(rf"\b(\d+)\s*{_UNITS}\b", re.IGNORECASE),
        0.85,
    ),
    QuantityPattern(
        "parenthetical",
        re.compile(
            rf"\(\s*(?:qty|quantity|x|×)?\s*:?\s*(\d+)\s*{_UNITS}?\s*\)",
            re.IGNORECASE,
        ),
        0.8,
    ),
    QuantityPattern(
        "approximate",
        re.compile(r"(?:~|\babout\b|\bapprox(?:imately)?\b\.?)\s*(\d+)", re.IGNORECASE),
        0.7,
        approximate=True,
    ),
    QuantityPattern("bare_number", re.compile(r"\b(\d+)\b"), 0.4),
)


def parse_quantity(text: str) -> QuantityMatch | None:
    """Return the highest-precedence quantity found in ``text``.

    Example:
        >>> parse_quantity("Widget x3").value
        3
    """
    if not text:
        return None

    for pattern in QUANTITY_PATTERNS:
        for match in pattern.regex.finditer(text):
            value = int(match.group(1))
            if not MIN_QUANTITY <= value <= MAX_QUANTITY:
                continue
            confidence = pattern.confidence
            if pattern.approximate:
                confidence = round(confidence * APPROXIMATE_PENALTY, 4)
            return QuantityMatch(
                value=value,
                pattern=pattern.name,
                confidence=confidence,
                is_approximate=pattern.approximate,
                start=match.start(),
                end=match.end(),
            )
    return None


__all__ = [
    "MAX_QUANTITY",
    "MIN_QUANTITY",
    "QUANTITY_PATTERNS",
    "QuantityMatch",
    "parse_quantity",
]
