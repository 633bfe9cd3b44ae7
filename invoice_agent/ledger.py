"""SQLite invoice ledger: one row per registered invoice."""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

import sqlite_utils

from .models import InvoiceRecord

logger = logging.getLogger(__name__)


class Ledger:
    """Append-only registry of invoices, queried newest first for duplicate checks."""

    TABLE = "invoices"

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Continuation runs reuse this connection from a timer thread.
        self.db = sqlite_utils.Database(sqlite3.connect(str(db_path), check_same_thread=False))
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.db[self.TABLE].create(
            {
                "id": int,
                "provider": str,
                "invoice_date": str,
                "invoice_number": str,
                "concept": str,
                "amount_ex_vat": float,
                "vat_amount": float,
                "total_amount": float,
                "file_url": str,
                "message_id": str,
                "registered_at": str,
            },
            pk="id",
            if_not_exists=True,
        )

    def append_row(self, record: InvoiceRecord, file_url: str, message_id: Optional[str] = None) -> int:
        table = self.db[self.TABLE]
        table.insert(
            {
                "provider": record.provider,
                "invoice_date": record.invoice_date.isoformat() if record.invoice_date else "",
                "invoice_number": record.invoice_number,
                "concept": record.concept,
                "amount_ex_vat": record.amount_ex_vat,
                "vat_amount": record.vat_amount,
                "total_amount": record.total_amount,
                "file_url": file_url or "",
                "message_id": message_id,
                "registered_at": datetime.now(tz=UTC).isoformat(),
            }
        )
        logger.info(
            "Registered invoice %r from %r (total=%s)",
            record.invoice_number,
            record.provider,
            record.total_amount,
        )
        return table.last_pk

    def find_recent(self, n: int) -> list[dict]:
        return list(self.db[self.TABLE].rows_where(order_by="id desc", limit=n))

    def count(self) -> int:
        return self.db[self.TABLE].count
