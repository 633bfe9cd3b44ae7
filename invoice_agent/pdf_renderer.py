"""Render an email body to a PDF stored next to the other invoices."""

from __future__ import annotations

import html
import logging
import re
from typing import Protocol

from .models import CandidateMessage, FileRef, FolderRef
from .utils import looks_like_html

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^A-Za-z0-9\s]")

EMAIL_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <title>{title}</title>
  <style>
    body {{ font-family: Arial, sans-serif; padding: 20px; line-height: 1.6; color: #333; }}
    .subject {{ font-size: 18px; font-weight: bold; margin-bottom: 20px;
                padding-bottom: 10px; border-bottom: 2px solid #ddd; }}
    .content {{ margin-top: 20px; }}
  </style>
</head>
<body>
  <div class="subject">{title}</div>
  <div class="content">{content}</div>
</body>
</html>"""


class ConvertingStore(Protocol):
    def save_file(
        self, data: bytes, name: str, folder: FolderRef, content_type: str = ...
    ) -> FileRef: ...

    def download_as_pdf(self, file: FileRef) -> bytes: ...

    def delete(self, file: FileRef) -> None: ...


def format_email_html(body: str, subject: str) -> str:
    """Wrap an email body in a printable HTML page; plain text is escaped."""
    content = body or ""
    if not looks_like_html(content):
        content = html.escape(content).replace("\n", "<br>")
    return EMAIL_TEMPLATE.format(title=html.escape(subject or ""), content=content)


def email_pdf_name(message: CandidateMessage) -> str:
    subject = _NON_ALNUM.sub("", message.subject or "")[:50].strip()
    subject = "_".join(subject.split()) or "NoSubject"
    return f"Email_{subject}_{message.received.date().isoformat()}.pdf"


class EmailPdfRenderer:
    """Upload the email as HTML, let the store convert it, keep only the PDF."""

    def __init__(self, store: ConvertingStore) -> None:
        self.store = store

    def render(self, message: CandidateMessage, folder: FolderRef) -> FileRef:
        document = format_email_html(message.html_body or message.body, message.subject)
        name = email_pdf_name(message)
        logger.info("Rendering message %s to %s", message.message_id, name)

        staged = self.store.save_file(
            document.encode("utf-8"), name[:-4] + ".html", folder, content_type="text/html"
        )
        try:
            pdf = self.store.download_as_pdf(staged)
        finally:
            self.store.delete(staged)
        return self.store.save_file(pdf, name, folder)
