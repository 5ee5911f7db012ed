"""Rule-based product caption parser.

Captions look like ``"<name> #<code>x<qty> (<notes>)"`` where ``<code>`` is a
vendor prefix of up to four letters followed by a purchase date written as
``mDDyy`` or ``mmDDyy``. Parsing never raises: everything that cannot be
extracted is listed in ``parsing_metadata.missing_fields``.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime
from typing import Final

from media_ingest.domain.models import ParsedContent, ParsingMetadata, ParsingMethod
from media_ingest.services.quantity_parser import QuantityMatch, parse_quantity

COMPLETE_CONFIDENCE: Final[float] = 0.9
FALLBACK_CONFIDENCE: Final[float] = 0.7
EMPTY_CAPTION_ERROR: Final[str] = "Empty caption"

REQUIRED_FIELDS: Final[tuple[str, ...]] = (
    "product_name",
    "product_code",
    "vendor_uid",
    "purchase_date",
    "quantity",
)

_NAME_BOUNDARY: Final[re.Pattern[str]] = re.compile(r"[#\n]")
_CODE: Final[re.Pattern[str]] = re.compile(r"#([A-Za-z0-9-]+)")
_CODE_QUANTITY_SUFFIX: Final[re.Pattern[str]] = re.compile(r"(?<=.)[xX]\d{1,4}$")
_VENDOR: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z]{1,4}")
_DATE_DIGITS: Final[re.Pattern[str]] = re.compile(r"(?<!\d)(\d{5,6})$")
_PARENTHETICAL: Final[re.Pattern[str]] = re.compile(r"\(([^()]*)\)")
_WHITESPACE: Final[re.Pattern[str]] = re.compile(r"\s+")
_NOTE_EDGE_CHARS: Final[str] = " -,.;:\t\n"


def parse_purchase_date(
    product_code: str, today: date | None = None
) -> tuple[str | None, str | None]:
    """Decode the trailing date digits of a product code.

    Returns:
        ``(iso_date, warning)``; both are None when the code carries no date
        digits, and ``warning`` explains why present digits were rejected.

    Example:
        >>> parse_purchase_date("AB12521", date(2024, 1, 1))
        ('2021-01-25', None)
    """
    match = _DATE_DIGITS.search(product_code)
    if match is None:
        return None, None

    raw = match.group(1)
    digits = raw.zfill(6)
    month, day, year = int(digits[0:2]), int(digits[2:4]), 2000 + int(digits[4:6])
    try:
        parsed = date(year, month, day)
    except ValueError:
        return None, f"invalid_purchase_date:{raw}"

    if parsed > (today or datetime.now(tz=UTC).date()):
        return None, f"future_purchase_date:{raw}"
    return parsed.isoformat(), None


def _empty_result(caption: str, timestamp: datetime) -> ParsedContent:
    return ParsedContent(
        caption=caption,
        parsing_metadata=ParsingMetadata(
            method=ParsingMethod.MANUAL,
            timestamp=timestamp,
            partial_success=False,
            confidence=0.0,
            error=EMPTY_CAPTION_ERROR,
        ),
    )


def _strip_spans(text: str, spans: list[tuple[int, int]]) -> str:
    kept = [
        char
        for index, char in enumerate(text)
        if not any(start <= index < end for start, end in spans)
    ]
    return "".join(kept)


def _find_notes(
    text: str, quantity: QuantityMatch | None, name_span: tuple[int, int] | None
) -> str | None:
    for match in _PARENTHETICAL.finditer(text):
        if quantity and match.start() < quantity.end and quantity.start < match.end():
            continue
        content = match.group(1).strip()
        if content:
            return content

    spans: list[tuple[int, int]] = []
    if name_span is not None:
        spans.append(name_span)
    if quantity is not None:
        spans.append((quantity.start, quantity.end))
    leftover = _WHITESPACE.sub(" ", _strip_spans(text, spans)).strip(_NOTE_EDGE_CHARS)
    return leftover or None


def parse_caption(
    caption: str | None,
    *,
    now: datetime | None = None,
    today: date | None = None,
) -> ParsedContent:
    """Extract product fields from a caption.

    Args:
        caption: Raw caption text (may be empty or None)
        now: Timestamp recorded in the metadata (defaults to current UTC time)
        today: Reference day for rejecting future purchase dates

    Returns:
        Parsed content; blank captions only carry ``parsing_metadata.error``
    """
    timestamp = now or datetime.now(tz=UTC)
    raw_caption = caption or ""
    text = raw_caption.strip()
    if not text:
        return _empty_result(raw_caption, timestamp)

    missing: list[str] = []
    warnings: list[str] = []

    boundary = _NAME_BOUNDARY.search(text)
    name_end = boundary.start() if boundary else len(text)
    product_name = text[:name_end].strip()
    name_span: tuple[int, int] | None = (0, name_end)
    if not product_name:
        product_name = text
        name_span = None
        missing.append("product_name")

    product_code: str | None = None
    vendor_uid: str | None = None
    purchase_date: str | None = None
    searchable = text

    code_match = _CODE.search(text)
    if code_match is not None:
        raw_code = code_match.group(1)
        suffix = _CODE_QUANTITY_SUFFIX.search(raw_code)
        product_code = raw_code[: suffix.start()] if suffix else raw_code
        trailing = raw_code[suffix.start() :] if suffix else ""
        # Keep a quantity glued to the code (``#AB12521x3``) visible to the
        # quantity patterns while hiding the code digits themselves.
        searchable = (
            f"{text[: code_match.start()]} {trailing} {text[code_match.end() :]}"
        )

        vendor_match = _VENDOR.match(product_code)
        if vendor_match is not None:
            vendor_uid = vendor_match.group(0).upper()
        else:
            missing.append("vendor_uid")

        purchase_date, date_warning = parse_purchase_date(product_code, today)
        if purchase_date is None:
            missing.append("purchase_date")
        if date_warning:
            warnings.append(date_warning)
    else:
        missing.extend(["product_code", "vendor_uid", "purchase_date"])

    quantity = parse_quantity(searchable)
    if quantity is None:
        missing.append("quantity")

    notes = _find_notes(searchable, quantity, name_span)

    confidence = FALLBACK_CONFIDENCE if missing else COMPLETE_CONFIDENCE
    if quantity is not None and quantity.pattern == "bare_number":
        confidence = min(confidence, FALLBACK_CONFIDENCE)

    ordered_missing = [field for field in REQUIRED_FIELDS if field in missing]
    return ParsedContent(
        product_name=product_name,
        product_code=product_code,
        vendor_uid=vendor_uid,
        purchase_date=purchase_date,
        quantity=quantity.value if quantity else None,
        notes=notes,
        caption=raw_caption,
        parsing_metadata=ParsingMetadata(
            method=ParsingMethod.MANUAL,
            timestamp=timestamp,
            partial_success=bool(ordered_missing) and bool(product_name),
            missing_fields=ordered_missing,
            warnings=warnings,
            quantity_pattern=quantity.pattern if quantity else None,
            quantity_confidence=quantity.confidence if quantity else None,
            is_approximate=quantity.is_approximate if quantity else False,
            confidence=confidence,
        ),
    )


__all__ = [
    "EMPTY_CAPTION_ERROR",
    "REQUIRED_FIELDS",
    "parse_caption",
    "parse_purchase_date",
]
