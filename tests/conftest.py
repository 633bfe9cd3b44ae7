from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any
from unittest.mock import Mock

import pytest

from invoice_agent.budget import TimeBudgetGuard
from invoice_agent.config import Settings
from invoice_agent.invoice_filter import InvoiceFilter
from invoice_agent.ledger import Ledger
from invoice_agent.models import PDF_CONTENT_TYPE, AttachmentRef, CandidateMessage, FileRef, FolderRef
from invoice_agent.pdf_renderer import EmailPdfRenderer
from invoice_agent.pipeline import MessagePipeline
from invoice_agent.state_store import StateStore
from invoice_agent.validator import DuplicateChecker

ISSUER_ALIASES = "ipronics;intelectium"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeSource:
    def __init__(self, labelled=(), by_keyword=(), attachments=None) -> None:
        self.labelled = list(labelled)
        self.by_keyword = list(by_keyword)
        self.attachments: dict[str, bytes] = dict(attachments or {})
        self.searches: list[tuple] = []
        self.read: list[str] = []

    def search(self, keywords, label_hint, date_range):
        self.searches.append((list(keywords), label_hint, date_range))
        return list(self.labelled if label_hint else self.by_keyword)

    def fetch_attachment_bytes(self, ref: AttachmentRef) -> bytes:
        return self.attachments[ref.attachment_id]

    def mark_read(self, message: CandidateMessage) -> None:
        self.read.append(message.message_id)


class FakeStore:
    """In-memory blob store; also renders HTML to PDF like OneDrive does."""

    def __init__(self) -> None:
        self.files: dict[str, tuple[FileRef, FolderRef, bytes]] = {}
        self.deleted: list[str] = []
        self._counter = 0
        self.root = FolderRef("root-id", "Facturas")

    def root_folder(self) -> FolderRef:
        return self.root

    def ensure_date_folder(self, day) -> FolderRef:
        name = f"{day.year:04d}-{day.month:02d}"
        return FolderRef(f"folder-{name}", name)

    def save_file(self, data, name, folder, content_type=PDF_CONTENT_TYPE) -> FileRef:
        self._counter += 1
        file = FileRef(f"file-{self._counter}", name)
        self.files[file.file_id] = (file, folder, data)
        return file

    def move_file(self, file, folder) -> FileRef:
        _, _, data = self.files[file.file_id]
        self.files[file.file_id] = (file, folder, data)
        return file

    def rename_file(self, file, name) -> FileRef:
        file.name = name
        return file

    def delete(self, file) -> None:
        self.files.pop(file.file_id)
        self.deleted.append(file.name)

    def url_of(self, file) -> str:
        _, folder, _ = self.files[file.file_id]
        file.web_url = f"https://drive.test/{folder.name}/{file.name}"
        return file.web_url

    def download_as_pdf(self, file) -> bytes:
        return b"%PDF-rendered " + self.files[file.file_id][2][:20]

    def folder_of(self, file_id: str) -> FolderRef:
        return self.files[file_id][1]

    def names(self) -> list[str]:
        return sorted(file.name for file, _, _ in self.files.values())


class FakeConverter:
    def __init__(self, text: str = "") -> None:
        self.text = text
        self.calls: list[tuple[int, float]] = []

    def extract_text(self, data, timeout, filename="document.pdf") -> str:
        self.calls.append((len(data), timeout))
        return self.text


class FakeExtractor:
    """Returns (or raises) scripted results in order."""

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls: list[dict[str, Any]] = []

    def extract(self, content, *, deadline, file_bytes=None, max_retries=None):
        self.calls.append({"content": content, "file_bytes": file_bytes, "deadline": deadline})
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def make_message(
    message_id: str = "m1",
    subject: str = "Factura 10983",
    body: str = "Adjuntamos la factura del mes.",
    received: datetime = datetime(2024, 5, 10, 9, 30, tzinfo=UTC),
    pdf: bool = True,
    pdf_size: int = 2048,
    pdf_name: str = "factura_10983.pdf",
) -> CandidateMessage:
    attachments = ()
    if pdf:
        attachments = (
            AttachmentRef(message_id, f"{message_id}-att", pdf_name, PDF_CONTENT_TYPE, pdf_size),
        )
    return CandidateMessage(
        message_id=message_id,
        thread_id=f"thread-{message_id}",
        subject=subject,
        body=body,
        html_body="",
        received=received,
        attachments=attachments,
    )


def gemini_response(payload: Any, status: int = 200) -> Mock:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    response = Mock()
    response.status_code = status
    response.text = text
    response.json.return_value = {"candidates": [{"content": {"parts": [{"text": text}]}}]}
    return response


@pytest.fixture
def make_settings():
    def factory(**overrides) -> Settings:
        values = {
            "GRAPH_CLIENT_ID": "client-id",
            "VERTEX_AI_PROJECT_ID": "invoices-project",
            "ISSUER_ALIASES": ISSUER_ALIASES,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return factory


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def run_guard(clock) -> TimeBudgetGuard:
    return TimeBudgetGuard(330.0, "run", clock=clock)


@pytest.fixture
def ledger(tmp_path) -> Ledger:
    return Ledger(tmp_path / "invoices.db")


@pytest.fixture
def state(tmp_path) -> StateStore:
    return StateStore(tmp_path / "state.db")


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def build_pipeline(settings, store, ledger, state):
    def factory(extractor, source=None, converter=None, pipeline_settings=None) -> MessagePipeline:
        active = pipeline_settings or settings
        return MessagePipeline(
            active,
            source=source or FakeSource(),
            store=store,
            converter=converter or FakeConverter(),
            renderer=EmailPdfRenderer(store),
            extractor=extractor,
            ledger=ledger,
            processed=state,
            early_filter=InvoiceFilter(active.issuer_aliases, active.non_invoice_patterns),
            duplicates=DuplicateChecker(ledger, active.issuer_aliases, active.ledger_dedup_window),
        )

    return factory
