"""Per-message state machine: early reject, extract, validate, deduplicate, persist."""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, Optional, Protocol, Sequence

import requests

from .budget import TimeBudgetGuard
from .config import Settings
from .invoice_filter import InvoiceFilter
from .models import (
    AttachmentRef,
    CandidateMessage,
    Created,
    DateRange,
    FileRef,
    FolderRef,
    InvoiceRecord,
    ProcessingOutcome,
    SkippedDuplicate,
    SkippedNotInvoice,
)
from .utils import html_to_text, invoice_filename
from .validator import DuplicateChecker, Rejected, ValidationResult

logger = logging.getLogger(__name__)


class MessageSource(Protocol):
    def search(
        self, keywords: Iterable[str], label_hint: Optional[str], date_range: DateRange
    ) -> Sequence[CandidateMessage]: ...

    def fetch_attachment_bytes(self, ref: AttachmentRef) -> bytes: ...

    def mark_read(self, message: CandidateMessage) -> None: ...


class BlobStore(Protocol):
    def root_folder(self) -> FolderRef: ...

    def ensure_date_folder(self, day: date) -> FolderRef: ...

    def save_file(self, data: bytes, name: str, folder: FolderRef) -> FileRef: ...

    def move_file(self, file: FileRef, folder: FolderRef) -> FileRef: ...

    def rename_file(self, file: FileRef, name: str) -> FileRef: ...

    def delete(self, file: FileRef) -> None: ...

    def url_of(self, file: FileRef) -> str: ...


class DocumentConverter(Protocol):
    def extract_text(self, data: bytes, timeout: float, filename: str = ...) -> str: ...


class EmailRenderer(Protocol):
    def render(self, message: CandidateMessage, folder: FolderRef) -> FileRef: ...


class Extractor(Protocol):
    def extract(
        self,
        content: str,
        *,
        deadline: TimeBudgetGuard,
        file_bytes: Optional[bytes] = None,
        max_retries: Optional[int] = None,
    ) -> ValidationResult: ...


class InvoiceLedger(Protocol):
    def append_row(self, record: InvoiceRecord, file_url: str, message_id: Optional[str] = None) -> int: ...


class ProcessedTracker(Protocol):
    def is_processed(self, message_id: str) -> bool: ...

    def mark_processed(self, message_id: str) -> None: ...


def email_context(message: CandidateMessage) -> str:
    parts = [f"EMAIL SUBJECT: {message.subject}"]
    if message.body and message.body.strip():
        parts.append(f"EMAIL BODY (additional context):\n{message.body.strip()}")
    return "\n".join(parts)


class MessagePipeline:
    """Turn one candidate message into exactly one processing outcome.

    ``process`` raises TimeoutFailure when a budget runs out and lets any
    other unexpected error propagate; the scheduler classifies both. Any
    artifact created along the way is removed unless the invoice ends up
    registered in the ledger.
    """

    def __init__(
        self,
        settings: Settings,
        source: MessageSource,
        store: BlobStore,
        converter: DocumentConverter,
        renderer: EmailRenderer,
        extractor: Extractor,
        ledger: InvoiceLedger,
        processed: ProcessedTracker,
        early_filter: InvoiceFilter,
        duplicates: DuplicateChecker,
    ) -> None:
        self.settings = settings
        self.source = source
        self.store = store
        self.converter = converter
        self.renderer = renderer
        self.extractor = extractor
        self.ledger = ledger
        self.processed = processed
        self.early_filter = early_filter
        self.duplicates = duplicates

    def process(self, message: CandidateMessage, run_guard: TimeBudgetGuard) -> ProcessingOutcome:
        guard = run_guard.child(self.settings.max_message_seconds, "message")
        logger.info(
            "Processing message %s (%r, %s attachments)",
            message.message_id,
            message.subject,
            len(message.attachments),
        )

        if self.processed.is_processed(message.message_id):
            logger.info("Message %s already processed; skipping", message.message_id)
            return SkippedDuplicate()

        reason = self.early_filter.rejection_reason(message)
        attachment = message.first_pdf()
        if reason is None and attachment is not None:
            reason = self.early_filter.attachment_rejection_reason(attachment)
        if reason:
            return SkippedNotInvoice(reason)
        guard.check_or_fail("early reject")

        if attachment is not None:
            return self._process_attachment(message, attachment, guard)
        return self._process_body(message, guard)

    def _process_attachment(
        self, message: CandidateMessage, attachment: AttachmentRef, guard: TimeBudgetGuard
    ) -> ProcessingOutcome:
        data = self.source.fetch_attachment_bytes(attachment)
        guard.check_or_fail("attachment download")
        staged = self.store.save_file(data, attachment.name or "attachment.pdf", self.store.root_folder())

        registered = False
        try:
            result = self._extract_from_pdf(message, attachment, data, guard)
            if isinstance(result, Rejected):
                return SkippedNotInvoice(result.reason)
            record = result.record
            reason = self._unpersistable_reason(record)
            if reason:
                logger.info("Not registering %s: %s", attachment.name, reason)
                return SkippedNotInvoice(reason)

            folder = self.store.ensure_date_folder(self._folder_date(record, message))
            self.store.rename_file(
                staged, invoice_filename(record.provider, record.invoice_number, record.invoice_date)
            )
            self.store.move_file(staged, folder)
            file_url = self.store.url_of(staged)
            guard.check_or_fail("before registration")

            if self.duplicates.is_duplicate(record, file_url):
                self.processed.mark_processed(message.message_id)
                return SkippedDuplicate(record)

            self._register(message, record, file_url)
            registered = True
            return Created(record, staged)
        finally:
            if not registered:
                self._discard(staged)

    def _extract_from_pdf(
        self,
        message: CandidateMessage,
        attachment: AttachmentRef,
        data: bytes,
        guard: TimeBudgetGuard,
    ) -> ValidationResult:
        context = email_context(message)
        if len(data) <= self.settings.multimodal_max_bytes:
            logger.info("Sending %s (%s bytes) for multimodal extraction", attachment.name, len(data))
            return self.extractor.extract(context, deadline=guard, file_bytes=data)

        conversion = guard.child(self.settings.text_extraction_seconds, "text_extraction")
        text = self.converter.extract_text(data, conversion.remaining(), filename=attachment.name)
        guard.check_or_fail("text extraction")
        if text:
            content = f"PDF CONTENT:\n{text}\n\n{context}"
        else:
            logger.warning("No usable text in %s; extracting from the email only", attachment.name)
            content = (
                f"PDF ATTACHMENT: {attachment.name} ({len(data)} bytes); "
                f"its text could not be extracted.\n\n{context}"
            )
        return self.extractor.extract(content, deadline=guard)

    def _process_body(self, message: CandidateMessage, guard: TimeBudgetGuard) -> ProcessingOutcome:
        content = message.body or html_to_text(message.html_body) or message.subject
        result = self.extractor.extract(content, deadline=guard)
        if isinstance(result, Rejected):
            return SkippedNotInvoice(result.reason)
        record = result.record
        if not (record.provider and record.invoice_number):
            logger.info("Email body of %s lacks provider or invoice number", message.message_id)
            return SkippedNotInvoice("email body without provider and invoice number")

        if self.duplicates.is_duplicate(record):
            self.processed.mark_processed(message.message_id)
            return SkippedDuplicate(record)

        folder = self.store.ensure_date_folder(self._folder_date(record, message))
        guard.check_or_fail("before rendering")
        rendered = self.renderer.render(message, folder)

        registered = False
        try:
            self.store.rename_file(
                rendered, invoice_filename(record.provider, record.invoice_number, record.invoice_date)
            )
            file_url = self.store.url_of(rendered)
            guard.check_or_fail("before registration")
            self._register(message, record, file_url)
            registered = True
            return Created(record, rendered)
        finally:
            if not registered:
                self._discard(rendered)

    @staticmethod
    def _unpersistable_reason(record: InvoiceRecord) -> Optional[str]:
        # Ledger rows always carry a provider and a number or total.
        if not record.provider:
            return "no provider to register"
        if not record.invoice_number and record.total_amount is None:
            return "neither invoice number nor total amount to register"
        return None

    def _register(self, message: CandidateMessage, record: InvoiceRecord, file_url: str) -> None:
        self.ledger.append_row(record, file_url, message.message_id)
        # Only a durably recorded invoice counts as processed.
        self.processed.mark_processed(message.message_id)
        logger.info(
            "Registered %r / %r from message %s", record.provider, record.invoice_number, message.message_id
        )
        if self.settings.mark_as_read:
            try:
                self.source.mark_read(message)
            except requests.RequestException as exc:
                logger.warning("Could not mark message %s as read: %s", message.message_id, exc)

    def _discard(self, file: FileRef) -> None:
        try:
            self.store.delete(file)
        except requests.RequestException as exc:
            logger.warning("Could not delete artifact %s: %s", file.name, exc)

    @staticmethod
    def _folder_date(record: InvoiceRecord, message: CandidateMessage) -> date:
        return record.invoice_date or message.received.date()
