"""Decide whether extracted data is a genuine, received, not-yet-registered invoice."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol, Sequence, Union

from .models import InvoiceRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Accepted:
    record: InvoiceRecord


@dataclass(frozen=True)
class Rejected:
    reason: str
    record: Optional[InvoiceRecord] = None


ValidationResult = Union[Accepted, Rejected]


def _has_amount(value: Optional[float]) -> bool:
    return value is not None and value != 0


def _mentions(text: str, needles: Iterable[str]) -> Optional[str]:
    lowered = (text or "").lower()
    return next((needle for needle in needles if needle and needle in lowered), None)


class InvoiceValidator:
    """Ordered rules; the first rule that objects decides the rejection."""

    def __init__(self, issuer_aliases: Iterable[str], marketing_keywords: Iterable[str]) -> None:
        self.issuer_aliases = [alias.lower() for alias in issuer_aliases if alias]
        self.marketing_keywords = [kw.lower() for kw in marketing_keywords if kw]
        self.rules = (
            self.explicit_negative,
            self.self_issued,
            self.missing_identity,
            self.missing_number_and_amounts,
            self.marketing,
        )

    def validate(self, record: InvoiceRecord) -> ValidationResult:
        for rule in self.rules:
            reason = rule(record)
            if reason:
                logger.info(
                    "Rejected extracted data (%s): provider=%r number=%r",
                    reason,
                    record.provider,
                    record.invoice_number,
                )
                return Rejected(reason, record)
        if not record.invoice_number:
            logger.info(
                "Invoice number missing but an amount is present; accepting %r as a receipt",
                record.provider,
            )
        return Accepted(record)

    def is_valid(self, record: InvoiceRecord) -> bool:
        return isinstance(self.validate(record), Accepted)

    def explicit_negative(self, record: InvoiceRecord) -> Optional[str]:
        if record.is_invoice is False:
            detail = f": {record.rejection_reason}" if record.rejection_reason else ""
            return f"model says this is not an invoice{detail}"
        return None

    def self_issued(self, record: InvoiceRecord) -> Optional[str]:
        alias = _mentions(record.provider, self.issuer_aliases)
        if alias:
            return f"issued by own entity ({alias}) in provider"
        alias = _mentions(record.concept, self.issuer_aliases)
        if alias:
            return f"issued by own entity ({alias}) in concept"
        return None

    def missing_identity(self, record: InvoiceRecord) -> Optional[str]:
        if not record.provider and not record.invoice_number:
            return "missing both provider and invoice number"
        return None

    def missing_number_and_amounts(self, record: InvoiceRecord) -> Optional[str]:
        if not record.invoice_number and not any(_has_amount(v) for v in record.amounts()):
            return "missing invoice number and every amount"
        return None

    def marketing(self, record: InvoiceRecord) -> Optional[str]:
        keyword = _mentions(record.provider, self.marketing_keywords) or _mentions(
            record.concept, self.marketing_keywords
        )
        if keyword and not record.invoice_number and not _has_amount(record.total_amount):
            return f"marketing content ({keyword})"
        return None


class LedgerReader(Protocol):
    def find_recent(self, n: int) -> Sequence[dict[str, Any]]: ...


class DuplicateChecker:
    """Registration-time duplicate scan over the most recent ledger rows."""

    def __init__(self, ledger: LedgerReader, issuer_aliases: Iterable[str], window: int = 200) -> None:
        self.ledger = ledger
        self.issuer_aliases = [alias.lower() for alias in issuer_aliases if alias]
        self.window = window

    def is_duplicate(self, record: InvoiceRecord, file_url: str = "") -> bool:
        number = (record.invoice_number or "").strip()
        provider = (record.provider or "").strip().lower()
        if not number and not provider and not file_url:
            return False

        alias = _mentions(provider, self.issuer_aliases)
        if alias:
            logger.info("Refusing to register invoice from own entity %r", record.provider)
            return True

        rows = self.ledger.find_recent(self.window)
        for row in rows:
            row_number = str(row.get("invoice_number") or "").strip()
            row_provider = str(row.get("provider") or "").strip().lower()
            row_url = row.get("file_url") or ""
            if number and row_number == number:
                logger.info("Duplicate invoice number %r (checked %s rows)", number, len(rows))
                return True
            if provider and number and row_provider == provider and row_number == number:
                logger.info("Duplicate provider+number %r/%r", record.provider, number)
                return True
            if file_url and row_url == file_url:
                logger.info("Duplicate artifact %s", file_url)
                return True
        return False
