"""Caption analysis with optional AI escalation for low-confidence parses."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any, Final

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import LLMAPIError, ValidationError
from media_ingest.domain.models import ParsedContent, ParsingMetadata, ParsingMethod
from media_ingest.domain.processing_constants import AI_ESCALATION_CONFIDENCE_THRESHOLD
from media_ingest.domain.protocols import AICompletionPort
from media_ingest.observability.metrics import CAPTION_PARSES_TOTAL
from media_ingest.services.caption_parser import REQUIRED_FIELDS, parse_caption
from media_ingest.services.quantity_parser import MAX_QUANTITY, MIN_QUANTITY

logger = get_logger(__name__)

AI_CONFIDENCE: Final[float] = 0.8
_TEXT_FIELDS: Final[tuple[str, ...]] = (
    "product_name",
    "product_code",
    "vendor_uid",
    "notes",
)


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _clean_quantity(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        return None
    return quantity if MIN_QUANTITY <= quantity <= MAX_QUANTITY else None


def _clean_date(value: Any, today: date) -> str | None:
    text = _clean_text(value)
    if text is None:
        return None
    try:
        parsed = date.fromisoformat(text[:10])
    except ValueError:
        return None
    return parsed.isoformat() if parsed <= today else None


class AICaptionParser:
    """Turns an AI completion into :class:`ParsedContent`.

    The completion service is expected to answer with a JSON object holding the
    product fields; anything it leaves out is taken from the manual result.
    """

    def __init__(self, completion: AICompletionPort) -> None:
        self._completion = completion

    def parse(
        self, caption: str, manual: ParsedContent, *, now: datetime | None = None
    ) -> ParsedContent:
        raw = self._completion.complete(caption)
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid JSON from AI parser: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValidationError("AI parser response must be a JSON object")

        timestamp = now or datetime.now(tz=UTC)
        merged: dict[str, Any] = {}
        for field in _TEXT_FIELDS:
            merged[field] = _clean_text(payload.get(field)) or getattr(manual, field)
        if merged["vendor_uid"]:
            merged["vendor_uid"] = merged["vendor_uid"].upper()
        merged["quantity"] = _clean_quantity(payload.get("quantity")) or manual.quantity
        merged["purchase_date"] = (
            _clean_date(payload.get("purchase_date"), timestamp.date())
            or manual.purchase_date
        )

        missing = [field for field in REQUIRED_FIELDS if not merged.get(field)]
        return ParsedContent(
            **merged,
            caption=manual.caption,
            parsing_metadata=ParsingMetadata(
                method=ParsingMethod.AI,
                timestamp=timestamp,
                partial_success=bool(missing) and bool(merged["product_name"]),
                missing_fields=missing,
                warnings=list(manual.parsing_metadata.warnings),
                quantity_pattern=manual.parsing_metadata.quantity_pattern,
                quantity_confidence=manual.parsing_metadata.quantity_confidence,
                is_approximate=manual.parsing_metadata.is_approximate,
                confidence=AI_CONFIDENCE,
            ),
        )


class CaptionAnalyzer:
    """Manual parse first, AI pass only when confidence is low."""

    def __init__(
        self,
        ai_parser: AICaptionParser | None = None,
        *,
        confidence_threshold: float = AI_ESCALATION_CONFIDENCE_THRESHOLD,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._ai_parser = ai_parser
        self._threshold = confidence_threshold
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def analyze(self, caption: str | None) -> ParsedContent:
        now = self._clock()
        manual = parse_caption(caption, now=now, today=now.date())
        metadata = manual.parsing_metadata
        if metadata.error or self._ai_parser is None:
            CAPTION_PARSES_TOTAL.labels(method=ParsingMethod.MANUAL.value).inc()
            return manual

        confidence = metadata.confidence or 0.0
        if confidence >= self._threshold:
            CAPTION_PARSES_TOTAL.labels(method=ParsingMethod.MANUAL.value).inc()
            return manual

        try:
            result = self._ai_parser.parse(manual.caption, manual, now=now)
        except (LLMAPIError, ValidationError) as exc:
            logger.warning(
                "ai_caption_parse_failed",
                error=str(exc),
                manual_confidence=confidence,
            )
            CAPTION_PARSES_TOTAL.labels(method=ParsingMethod.MANUAL.value).inc()
            return manual.model_copy(
                update={
                    "parsing_metadata": metadata.model_copy(
                        update={"fallback_reason": f"ai_failed: {exc}"}
                    )
                }
            )

        logger.info(
            "caption_escalated_to_ai",
            manual_confidence=confidence,
            missing_fields=result.parsing_metadata.missing_fields,
        )
        CAPTION_PARSES_TOTAL.labels(method=ParsingMethod.AI.value).inc()
        return result


__all__ = ["AI_CONFIDENCE", "AICaptionParser", "CaptionAnalyzer"]
