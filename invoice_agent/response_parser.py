"""Read a JSON object out of free-form model output."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from .errors import ParseFailure

logger = logging.getLogger(__name__)

SAMPLE_LENGTH = 500
_FENCE_OPEN = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_OBJECT_SPAN = re.compile(r"\{.*\}", re.DOTALL)


def parse_model_output(raw: str) -> dict[str, Any]:
    """Decode the model's answer, tolerating markdown fences and surrounding prose."""
    text = (raw or "").strip()
    try:
        return _require_object(json.loads(text), text)
    except json.JSONDecodeError as direct_error:
        cleaned = _FENCE_OPEN.sub("", text).replace("```", "").strip()
        match = _OBJECT_SPAN.search(cleaned)
        if match is None:
            raise ParseFailure(direct_error, sample=text[:SAMPLE_LENGTH]) from direct_error
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as span_error:
            raise ParseFailure(direct_error, span_error, text[:SAMPLE_LENGTH]) from span_error
        logger.debug("Parsed model output from an embedded JSON span")
        return _require_object(parsed, text)


def _require_object(value: Any, text: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ParseFailure(f"expected a JSON object, got {type(value).__name__}", sample=text[:SAMPLE_LENGTH])
    return value
