"""Typed containers shared across the pipeline."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, Optional, Union

from .utils import parse_invoice_date

PDF_CONTENT_TYPE = "application/pdf"


@dataclass(frozen=True)
class AttachmentRef:
    """Metadata for a file attachment; bytes are fetched through the message source."""

    message_id: str
    attachment_id: str
    name: str
    content_type: str
    size: int

    @property
    def is_pdf(self) -> bool:
        return (
            self.content_type.lower() == PDF_CONTENT_TYPE
            or self.name.lower().endswith(".pdf")
        )


@dataclass(frozen=True)
class CandidateMessage:
    """A fetched email message, the unit of work of one pipeline pass."""

    message_id: str
    thread_id: str
    subject: str
    body: str
    html_body: str
    received: datetime
    attachments: tuple[AttachmentRef, ...] = ()

    def first_pdf(self) -> Optional[AttachmentRef]:
        return next((att for att in self.attachments if att.is_pdf), None)


@dataclass(frozen=True)
class DateRange:
    """Inclusive search window; either bound may be open."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, moment: datetime) -> bool:
        if self.start and moment < self.start:
            return False
        if self.end and moment > self.end:
            return False
        return True


@dataclass(frozen=True)
class FolderRef:
    folder_id: str
    name: str


@dataclass
class FileRef:
    """A stored artifact. ``name`` follows renames performed through the store."""

    file_id: str
    name: str
    web_url: str = ""


# Model output keys; the Spanish names come from the first prompt revision.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "is_invoice": ("isInvoice", "esFactura"),
    "provider": ("provider", "proveedor"),
    "invoice_date": ("invoiceDate", "fechaFactura"),
    "invoice_number": ("invoiceNumber", "numeroFactura"),
    "concept": ("concept", "concepto"),
    "amount_ex_vat": ("amountExVat", "importeSinIVA"),
    "vat_amount": ("vatAmount", "iva"),
    "total_amount": ("totalAmount", "importeTotal"),
    "rejection_reason": ("rejectionReason", "razon"),
}

MONETARY_FIELDS = ("amount_ex_vat", "vat_amount", "total_amount")


def _lookup(payload: dict[str, Any], name: str) -> Any:
    for key in FIELD_ALIASES[name]:
        if key in payload:
            return payload[key]
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _flag(value: Any) -> bool:
    # Only an explicit negative counts as "not an invoice".
    if isinstance(value, str):
        return value.strip().lower() not in {"false", "no", "0"}
    return value is not False


@dataclass
class InvoiceRecord:
    """Invoice fields extracted by the model, after numeric normalisation."""

    is_invoice: bool = True
    provider: str = ""
    invoice_date: Optional[date] = None
    invoice_number: str = ""
    concept: str = ""
    amount_ex_vat: Optional[float] = None
    vat_amount: Optional[float] = None
    total_amount: Optional[float] = None
    rejection_reason: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "InvoiceRecord":
        """Build a record from the (already normalised) model output."""
        amounts = {}
        for name in MONETARY_FIELDS:
            value = _lookup(payload, name)
            amounts[name] = value if isinstance(value, (int, float)) and not isinstance(value, bool) else None
        reason = _lookup(payload, "rejection_reason")
        return cls(
            is_invoice=_flag(_lookup(payload, "is_invoice")),
            provider=_text(_lookup(payload, "provider")),
            invoice_date=parse_invoice_date(_lookup(payload, "invoice_date")),
            invoice_number=_text(_lookup(payload, "invoice_number")),
            concept=_text(_lookup(payload, "concept")),
            rejection_reason=_text(reason) or None,
            **amounts,
        )

    def amounts(self) -> tuple[Optional[float], Optional[float], Optional[float]]:
        return (self.amount_ex_vat, self.vat_amount, self.total_amount)


@dataclass(frozen=True)
class Created:
    record: InvoiceRecord
    artifact: Optional[FileRef]


@dataclass(frozen=True)
class SkippedNotInvoice:
    reason: str


@dataclass(frozen=True)
class SkippedDuplicate:
    record: Optional[InvoiceRecord] = None


@dataclass(frozen=True)
class SkippedTimeout:
    error: Exception


@dataclass(frozen=True)
class Failed:
    cause: Exception


ProcessingOutcome = Union[Created, SkippedNotInvoice, SkippedDuplicate, SkippedTimeout, Failed]


@dataclass(frozen=True)
class RunSummary:
    """What a run hands back to its caller."""

    run_id: str
    processed: int
    created: int
    skipped: int
    errors: int
    timeouts: int
    remaining: int
    elapsed_seconds: float
    circuit_open: bool = False
    continuation_scheduled: bool = False


@dataclass
class RunState:
    """Counters mutated by the scheduler over the course of one run."""

    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    elapsed_seconds: float = 0.0
    consecutive_timeout_count: int = 0
    processed_count: int = 0
    created_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    timeout_count: int = 0

    def record(self, outcome: ProcessingOutcome) -> None:
        self.processed_count += 1
        if isinstance(outcome, Created):
            self.created_count += 1
        elif isinstance(outcome, Failed):
            self.error_count += 1
        else:
            self.skipped_count += 1
            if isinstance(outcome, SkippedTimeout):
                self.timeout_count += 1

    def summary(
        self, *, remaining: int, circuit_open: bool, continuation_scheduled: bool
    ) -> RunSummary:
        return RunSummary(
            run_id=self.run_id,
            processed=self.processed_count,
            created=self.created_count,
            skipped=self.skipped_count,
            errors=self.error_count,
            timeouts=self.timeout_count,
            remaining=remaining,
            elapsed_seconds=round(self.elapsed_seconds, 3),
            circuit_open=circuit_open,
            continuation_scheduled=continuation_scheduled,
        )
