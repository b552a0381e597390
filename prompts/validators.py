"""
Validation of structured model output.

Raw completions are reduced to a StructuredResponse. Anything malformed is
replaced by a fixed low-confidence answer instead of raising.
"""

import json
import math
from typing import Any, List

from prompts.templates import PromptTemplates
from retrieval.models import Citation, QueryType, StructuredResponse
from utils.logger import setup_logger

logger = setup_logger(__name__)


FALLBACK_ANSWER = (
    "I encountered an error processing the response. Please try rephrasing your question."
)
FALLBACK_CONFIDENCE = 0.1


class ResponseFormatError(ValueError):
    """Structured output could not be parsed or is missing required fields."""
    pass


def extract_json_object(raw: str) -> str:
    """Return the first balanced {...} span in raw text.

    Braces inside JSON string literals are ignored.

    Raises:
        ResponseFormatError: No balanced object found
    """
    start = raw.find("{")
    if start == -1:
        raise ResponseFormatError("No JSON object in response")

    depth = 0
    in_string = False
    escaped = False
    for position in range(start, len(raw)):
        char = raw[position]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return raw[start:position + 1]

    raise ResponseFormatError("Unbalanced JSON object in response")


def _as_page(value: Any) -> int:
    try:
        page = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    return int(page) if math.isfinite(page) else 0


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


class ResponseValidator:
    """Turns raw completions into validated StructuredResponses."""

    @staticmethod
    def fallback() -> StructuredResponse:
        return StructuredResponse(
            answer=FALLBACK_ANSWER,
            confidence=FALLBACK_CONFIDENCE,
            is_fallback=True
        )

    @staticmethod
    def parse(raw: str, query_type: QueryType) -> StructuredResponse:
        """Strict parse; raises ResponseFormatError on any problem."""
        try:
            data = json.loads(extract_json_object(raw))
        except json.JSONDecodeError as e:
            raise ResponseFormatError(f"Invalid JSON: {e}")
        if not isinstance(data, dict):
            raise ResponseFormatError("Response is not a JSON object")

        template = PromptTemplates.for_query_type(query_type)
        missing = [name for name in template.required_fields if name not in data]
        if missing:
            raise ResponseFormatError(f"Missing required fields: {missing}")

        answer = data["answer"]
        if not isinstance(answer, str) or not answer.strip():
            raise ResponseFormatError("Answer must be a non-empty string")

        try:
            confidence = float(data["confidence"])
        except (TypeError, ValueError, OverflowError):
            raise ResponseFormatError(f"Confidence is not a number: {data['confidence']!r}")
        if not math.isfinite(confidence):
            raise ResponseFormatError(f"Confidence is not finite: {confidence}")
        confidence = max(0.0, min(1.0, confidence))

        raw_citations = data.get("citations")
        citations = [
            Citation(
                source=str(item.get("source", "")),
                page=_as_page(item.get("page")),
                section=str(item.get("section") or "")
            )
            for item in (raw_citations if isinstance(raw_citations, list) else [])
            if isinstance(item, dict)
        ]

        return StructuredResponse(
            answer=answer.strip(),
            confidence=confidence,
            citations=citations,
            sections=_as_str_list(data.get("sections")),
            steps=_as_str_list(data.get("steps"))
        )

    @staticmethod
    def validate_and_sanitize(raw: str, query_type: QueryType) -> StructuredResponse:
        """Parse a structured completion, falling back on any failure.

        Args:
            raw: Raw completion text
            query_type: Archetype whose schema the completion should follow

        Returns:
            StructuredResponse; the fixed fallback answer if parsing failed
        """
        try:
            return ResponseValidator.parse(raw, query_type)
        except (ResponseFormatError, ValueError, TypeError, OverflowError, RecursionError) as e:
            logger.warning(f"Structured response rejected: {e}")
            return ResponseValidator.fallback()
