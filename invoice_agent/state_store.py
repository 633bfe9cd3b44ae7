"""Key/value run bookkeeping in SQLite: processed message ids, last run, continuations."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

import sqlite_utils
from sqlite_utils.db import NotFoundError

logger = logging.getLogger(__name__)

PROCESSED_IDS_KEY = "processed_message_ids"
LAST_RUN_KEY = "last_run_time"
CONTINUATION_KEY = "continuation_due_at"


class StateStore:
    """JSON values keyed by name."""

    TABLE = "state"

    def __init__(self, db_path: Path, processed_cap: int = 5000) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Continuation runs reuse this connection from a timer thread.
        self.db = sqlite_utils.Database(sqlite3.connect(str(db_path), check_same_thread=False))
        self.processed_cap = processed_cap
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.db[self.TABLE].create(
            {"key": str, "value": str, "updated_at": str},
            pk="key",
            if_not_exists=True,
        )

    def get(self, key: str, default: Any = None) -> Any:
        try:
            row = self.db[self.TABLE].get(key)
        except NotFoundError:
            return default
        return json.loads(row["value"])

    def set(self, key: str, value: Any) -> None:
        self.db[self.TABLE].upsert(
            {"key": key, "value": json.dumps(value), "updated_at": datetime.now(tz=UTC).isoformat()},
            pk="key",
        )

    def delete(self, key: str) -> None:
        self.db[self.TABLE].delete_where("key = ?", [key])

    def processed_ids(self) -> list[str]:
        return list(self.get(PROCESSED_IDS_KEY, []))

    def is_processed(self, message_id: str) -> bool:
        return message_id in self.processed_ids()

    def mark_processed(self, message_id: str) -> None:
        ids = self.processed_ids()
        if message_id in ids:
            return
        ids.append(message_id)
        if len(ids) > self.processed_cap:
            ids = ids[-self.processed_cap :]
        self.set(PROCESSED_IDS_KEY, ids)

    def clear_processed(self) -> int:
        count = len(self.processed_ids())
        self.delete(PROCESSED_IDS_KEY)
        logger.info("Cleared %s processed message ids", count)
        return count

    def last_run_time(self) -> Optional[datetime]:
        value = self.get(LAST_RUN_KEY)
        return datetime.fromisoformat(value) if value else None

    def set_last_run_time(self, moment: datetime) -> None:
        self.set(LAST_RUN_KEY, moment.isoformat())

    def continuation_due_at(self) -> Optional[datetime]:
        value = self.get(CONTINUATION_KEY)
        return datetime.fromisoformat(value) if value else None

    def set_continuation_due_at(self, moment: Optional[datetime]) -> None:
        if moment is None:
            self.delete(CONTINUATION_KEY)
        else:
            self.set(CONTINUATION_KEY, moment.isoformat())
