from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from media_ingest.domain.models import ParsingMethod
from media_ingest.services.caption_parser import (
    EMPTY_CAPTION_ERROR,
    REQUIRED_FIELDS,
    parse_caption,
    parse_purchase_date,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
TODAY = NOW.date()


def test_full_caption_extracts_every_field() -> None:
    result = parse_caption("Widget #AB12521x3 (blue)", now=NOW, today=TODAY)

    assert result.product_name == "Widget"
    assert result.product_code == "AB12521"
    assert result.vendor_uid == "AB"
    assert result.purchase_date == "2021-01-25"
    assert result.quantity == 3
    assert result.notes == "blue"
    assert result.caption == "Widget #AB12521x3 (blue)"

    metadata = result.parsing_metadata
    assert metadata.method == ParsingMethod.MANUAL
    assert metadata.missing_fields == []
    assert metadata.partial_success is False
    assert metadata.error is None
    assert metadata.confidence == pytest.approx(0.9)
    assert metadata.timestamp == NOW


@pytest.mark.parametrize("caption", ["", "   ", None])
def test_blank_caption_reports_error_without_raising(caption: str | None) -> None:
    result = parse_caption(caption, now=NOW, today=TODAY)

    assert result.parsing_metadata.error == EMPTY_CAPTION_ERROR
    assert result.parsing_metadata.partial_success is False
    assert result.product_name is None
    assert result.product_code is None
    assert result.quantity is None


def test_caption_without_code_is_partial() -> None:
    result = parse_caption("Widget x3", now=NOW, today=TODAY)

    assert result.product_name == "Widget"
    assert result.quantity == 3
    assert result.parsing_metadata.missing_fields == [
        "product_code",
        "vendor_uid",
        "purchase_date",
    ]
    assert result.parsing_metadata.partial_success is True
    assert result.parsing_metadata.confidence == pytest.approx(0.7)


def test_six_digit_date_and_long_vendor_prefix() -> None:
    result = parse_caption("Hoodie #XYZ103123 qty: 12", now=NOW, today=TODAY)

    assert result.vendor_uid == "XYZ"
    assert result.purchase_date == "2023-10-31"
    assert result.quantity == 12
    assert result.parsing_metadata.quantity_pattern == "prefix"


def test_invalid_date_digits_are_reported_as_warning() -> None:
    result = parse_caption("Gadget #AB13521 x2", now=NOW, today=TODAY)

    assert result.product_code == "AB13521"
    assert result.purchase_date is None
    assert "purchase_date" in result.parsing_metadata.missing_fields
    assert result.parsing_metadata.warnings == ["invalid_purchase_date:13521"]


def test_future_date_is_rejected() -> None:
    iso_date, warning = parse_purchase_date("CD12525", TODAY)

    assert iso_date is None
    assert warning == "future_purchase_date:12525"


def test_code_without_date_digits_has_no_warning() -> None:
    assert parse_purchase_date("ABC", TODAY) == (None, None)
    assert parse_purchase_date("AB12521", date(2024, 1, 1)) == ("2021-01-25", None)


def test_vendor_is_uppercased() -> None:
    result = parse_caption("Cap #ab12521 x1", now=NOW, today=TODAY)

    assert result.vendor_uid == "AB"


@pytest.mark.parametrize(
    "caption",
    [
        "#",
        "###",
        "(((",
        "x",
        "#x99999999",
        "Widget #-- (qty 0)",
        "\n\n#AB\n",
        "Только текст без кода",
        "Widget #AB12521x3 (blue) (red) 44 pcs ~5",
        "a" * 5000,
    ],
)
def test_parser_never_raises_and_reports_known_fields(caption: str) -> None:
    result = parse_caption(caption, now=NOW, today=TODAY)

    assert set(result.parsing_metadata.missing_fields) <= set(REQUIRED_FIELDS)
    if result.quantity is not None:
        assert 1 <= result.quantity <= 9999
    assert result.caption == caption


def test_parse_is_deterministic() -> None:
    caption = "Sneakers #NK52223 2x (size 42)"

    first = parse_caption(caption, now=NOW, today=TODAY)
    second = parse_caption(caption, now=NOW, today=TODAY)

    assert first.model_dump() == second.model_dump()
