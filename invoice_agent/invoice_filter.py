"""Cheap heuristics that reject obvious non-invoices before any AI call."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from .models import AttachmentRef, CandidateMessage

logger = logging.getLogger(__name__)


class InvoiceFilter:
    """Evaluate subject/body/file-name heuristics to spot mail that is not a received invoice.

    Only high-confidence signals are used here: everything that passes still
    goes through the full validator after extraction.
    """

    def __init__(self, issuer_aliases: Iterable[str], non_invoice_patterns: Iterable[str]) -> None:
        self.issuer_aliases = [alias.lower() for alias in issuer_aliases if alias]
        self.non_invoice_patterns = [
            re.compile(pattern, re.IGNORECASE) for pattern in non_invoice_patterns if pattern
        ]

    def rejection_reason(self, message: CandidateMessage) -> Optional[str]:
        """Return why the message can be skipped, or None when it needs extraction."""
        text = f"{message.subject or ''} {message.body or ''}".lower()
        alias = next((alias for alias in self.issuer_aliases if alias in text), None)
        if alias:
            logger.info(
                "Message %s mentions own entity %r; likely issued by us", message.message_id, alias
            )
            return f"mentions own entity ({alias})"

        subject = message.subject or ""
        for pattern in self.non_invoice_patterns:
            if pattern.search(subject):
                logger.info("Subject %r matched non-invoice pattern %s", subject, pattern.pattern)
                return f"subject matches non-invoice pattern ({pattern.pattern})"

        logger.debug("Message %s passed the early filter", message.message_id)
        return None

    def attachment_rejection_reason(self, attachment: AttachmentRef) -> Optional[str]:
        filename = (attachment.name or "").lower()
        alias = next((alias for alias in self.issuer_aliases if alias in filename), None)
        if alias:
            logger.info("Attachment %r mentions own entity %r", attachment.name, alias)
            return f"attachment name mentions own entity ({alias})"
        return None
