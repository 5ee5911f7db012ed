from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from media_ingest.domain.exceptions import LLMAPIError
from media_ingest.domain.models import ParsingMethod
from media_ingest.services.caption_analysis import (
    AI_CONFIDENCE,
    AICaptionParser,
    CaptionAnalyzer,
)
from media_ingest.services.caption_parser import parse_caption

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class FakeCompletion:
    def __init__(self, response: str | Exception) -> None:
        self.response = response
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def _analyzer(completion: FakeCompletion, threshold: float = 0.75) -> CaptionAnalyzer:
    return CaptionAnalyzer(
        AICaptionParser(completion), confidence_threshold=threshold, clock=lambda: NOW
    )


def test_confident_manual_parse_skips_ai() -> None:
    completion = FakeCompletion("{}")

    result = _analyzer(completion).analyze("Widget #AB12521x3 (blue)")

    assert completion.prompts == []
    assert result.parsing_metadata.method == ParsingMethod.MANUAL


def test_low_confidence_caption_is_escalated() -> None:
    completion = FakeCompletion(
        json.dumps(
            {
                "product_name": "Widget",
                "product_code": "AB12521",
                "vendor_uid": "ab",
                "purchase_date": "2021-01-25",
                "quantity": 3,
            }
        )
    )

    result = _analyzer(completion).analyze("Widget x3 from ab last january")

    assert completion.prompts == ["Widget x3 from ab last january"]
    assert result.parsing_metadata.method == ParsingMethod.AI
    assert result.parsing_metadata.confidence == pytest.approx(AI_CONFIDENCE)
    assert result.parsing_metadata.missing_fields == []
    assert result.parsing_metadata.partial_success is False
    assert result.vendor_uid == "AB"
    assert result.quantity == 3
    assert result.caption == "Widget x3 from ab last january"


def test_ai_fields_missing_are_taken_from_manual_parse() -> None:
    completion = FakeCompletion(json.dumps({"product_code": "AB12521", "quantity": 0}))

    result = _analyzer(completion).analyze("Widget x3")

    assert result.product_name == "Widget"
    assert result.product_code == "AB12521"
    assert result.quantity == 3
    assert result.vendor_uid is None
    assert result.parsing_metadata.partial_success is True


def test_future_ai_date_is_dropped() -> None:
    completion = FakeCompletion(json.dumps({"purchase_date": "2030-01-01"}))

    result = _analyzer(completion).analyze("Widget x3")

    assert result.purchase_date is None
    assert "purchase_date" in result.parsing_metadata.missing_fields


@pytest.mark.parametrize(
    "response",
    ["not json at all", "[1, 2, 3]", LLMAPIError("upstream timeout")],
)
def test_ai_failure_falls_back_to_manual(response: str | Exception) -> None:
    result = _analyzer(FakeCompletion(response)).analyze("Widget x3")

    metadata = result.parsing_metadata
    assert metadata.method == ParsingMethod.MANUAL
    assert metadata.fallback_reason is not None
    assert metadata.fallback_reason.startswith("ai_failed: ")
    assert result.product_name == "Widget"


def test_empty_caption_never_reaches_ai() -> None:
    completion = FakeCompletion("{}")

    result = _analyzer(completion, threshold=1.0).analyze("")

    assert completion.prompts == []
    assert result.parsing_metadata.error == "Empty caption"


def test_without_ai_parser_manual_result_is_returned() -> None:
    analyzer = CaptionAnalyzer(clock=lambda: NOW)

    assert analyzer.analyze("Widget x3") == parse_caption(
        "Widget x3", now=NOW, today=NOW.date()
    )
