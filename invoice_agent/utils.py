"""Utility helpers shared across modules."""

from __future__ import annotations

import re
from datetime import UTC, date, datetime
from html.parser import HTMLParser
from typing import Any, Iterable, Optional

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE = re.compile(r"\s+")


def parse_graph_datetime(value: str) -> datetime:
    """Convert Graph ISO strings (with trailing Z) into aware UTC datetimes."""
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Force a datetime into UTC without altering instant."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def isoformat_utc(dt: datetime) -> str:
    """Return an ISO string that Graph accepts in $filter clauses."""
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def chunked(iterable: Iterable, size: int):
    """Yield successive sized chunks from an iterable."""
    chunk = []
    for item in iterable:
        chunk.append(item)
        if len(chunk) == size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def parse_invoice_date(value: Any) -> Optional[date]:
    """Parse a ``YYYY-MM-DD`` invoice date, returning None for anything implausible."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None
    if not 2000 <= parsed.year <= 2100:
        return None
    return parsed


def year_month(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def sanitize_filename(text: str, max_length: int = 50) -> str:
    """Make a string safe for use as part of a file name."""
    if not text:
        return "Unknown"
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", text.strip())
    cleaned = _WHITESPACE.sub("_", cleaned)
    return cleaned[:max_length].strip() or "Unknown"


def invoice_filename(provider: str, invoice_number: str, invoice_date: Optional[date]) -> str:
    """Deterministic artifact name built from the extracted invoice fields."""
    provider_part = sanitize_filename(provider or "Unknown")
    number_part = sanitize_filename(invoice_number or "N/A")
    date_part = invoice_date.isoformat() if invoice_date else "Unknown"
    return f"{provider_part}_{number_part}_{date_part}.pdf"


class _HTMLStripper(HTMLParser):
    """Collect visible text nodes, skipping script and style blocks."""

    def __init__(self) -> None:
        super().__init__()
        self.parts: list[str] = []
        self.skip = False

    def handle_starttag(self, tag, attrs):
        if tag in ("script", "style"):
            self.skip = True

    def handle_endtag(self, tag):
        if tag in ("script", "style"):
            self.skip = False

    def handle_data(self, data):
        if not self.skip:
            self.parts.append(data)

    def get_text(self) -> str:
        return " ".join(" ".join(self.parts).split())


def html_to_text(html: str) -> str:
    """Reduce an HTML body to whitespace-normalised plain text."""
    if not html:
        return ""
    stripper = _HTMLStripper()
    stripper.feed(html)
    stripper.close()
    return stripper.get_text()


def looks_like_html(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in ("<html", "<body", "<div", "<p>", "<table", "<br"))
