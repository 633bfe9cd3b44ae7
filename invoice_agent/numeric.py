"""Normalisation of locale-formatted monetary values from model output."""

from __future__ import annotations

import math
import re
from typing import Any, Optional

from .models import FIELD_ALIASES, MONETARY_FIELDS

_NOISE = re.compile(r"[\s €$£]|EUR|USD|GBP", re.IGNORECASE)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def normalize_amount(value: Any) -> Optional[float]:
    """Return ``value`` as a float, or None when it cannot be read as a number.

    Zero is kept as zero; None means the amount is unknown.
    """
    if value is None or isinstance(value, bool):
        return None
    if _is_number(value):
        number = float(value)
        return None if math.isnan(number) else number
    if not isinstance(value, str):
        return None

    text = _NOISE.sub("", value)
    if not text:
        return None
    if "," in text and "." in text:
        # The right-most separator is the decimal one.
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    else:
        text = text.replace(",", ".")
    try:
        number = float(text)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def normalize_amounts(payload: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of the model payload with its three monetary fields normalised."""
    normalized = dict(payload)
    for name in MONETARY_FIELDS:
        for key in FIELD_ALIASES[name]:
            if key not in normalized:
                continue
            value = normalized[key]
            if _is_number(value) and not math.isnan(value):
                continue
            normalized[key] = normalize_amount(value)
    return normalized
