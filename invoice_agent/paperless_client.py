"""Best-effort PDF text extraction through a Paperless-ngx instance."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import requests

from .config import Settings

logger = logging.getLogger(__name__)

# Shorter texts are treated as a failed conversion (scanned images, empty pages).
MIN_TEXT_LENGTH = 50


class PaperlessConverter:
    """Consume a document, read back its OCR'd content, then delete it again.

    ``extract_text`` never raises for conversion problems: an empty string is
    the normal "nothing usable" answer.
    """

    REQUEST_TIMEOUT = 30.0

    def __init__(
        self,
        settings: Settings,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = 1.0,
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self.base_url = str(settings.paperless_base_url).rstrip("/")
        self.headers = {"Authorization": f"Token {settings.paperless_api_token}"}
        self.attempts = settings.text_extraction_attempts
        self._clock = clock
        self._sleep = sleep
        self.poll_interval = poll_interval

    def extract_text(self, data: bytes, timeout: float, filename: str = "document.pdf") -> str:
        deadline = self._clock() + timeout
        for attempt in range(1, self.attempts + 1):
            if self._clock() >= deadline:
                logger.warning("Text extraction budget of %.1fs used up", timeout)
                break
            try:
                text = self._convert_once(data, filename, deadline)
            except (requests.RequestException, ValueError) as exc:
                logger.warning("Text extraction attempt %s/%s failed: %s", attempt, self.attempts, exc)
                text = ""
            if len(text) > MIN_TEXT_LENGTH:
                logger.info("Extracted %s characters of text on attempt %s", len(text), attempt)
                return text
            logger.info(
                "Attempt %s/%s yielded %s characters; not enough text", attempt, self.attempts, len(text)
            )
            if attempt < self.attempts:
                self._sleep(self.poll_interval)
        return ""

    def _convert_once(self, data: bytes, filename: str, deadline: float) -> str:
        task_id = self._post_document(data, filename, deadline)
        document_id = self._wait_for_document(task_id, deadline)
        if document_id is None:
            return ""
        try:
            response = self._request("GET", f"/api/documents/{document_id}/", deadline)
            return (response.json().get("content") or "").strip()
        finally:
            self._delete_document(document_id)

    def _post_document(self, data: bytes, filename: str, deadline: float) -> str:
        files = {"document": (filename, data, "application/pdf")}
        response = self._request(
            "POST", "/api/documents/post_document/", deadline, data={"title": filename}, files=files
        )
        try:
            payload = response.json()
        except ValueError:
            payload = response.text
        return str(payload).strip().strip('"')

    def _wait_for_document(self, task_id: str, deadline: float) -> Optional[int]:
        while self._clock() < deadline:
            response = self._request("GET", "/api/tasks/", deadline, params={"task_id": task_id})
            tasks = response.json()
            task = tasks[0] if isinstance(tasks, list) and tasks else {}
            status = task.get("status")
            if status == "SUCCESS" and task.get("related_document"):
                return int(task["related_document"])
            if status in ("FAILURE", "REVOKED"):
                logger.warning("Paperless task %s failed: %s", task_id, task.get("result"))
                return None
            self._sleep(self.poll_interval)
        logger.warning("Paperless task %s did not finish in time", task_id)
        return None

    def _delete_document(self, document_id: int) -> None:
        try:
            self.session.delete(
                f"{self.base_url}/api/documents/{document_id}/",
                headers=self.headers,
                timeout=self.REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            logger.warning("Could not delete temporary Paperless document %s: %s", document_id, exc)

    def _request(self, method: str, path: str, deadline: float, **kwargs) -> requests.Response:
        timeout = max(0.1, min(self.REQUEST_TIMEOUT, deadline - self._clock()))
        response = self.session.request(
            method, f"{self.base_url}{path}", headers=self.headers, timeout=timeout, **kwargs
        )
        if response.status_code >= 400:
            logger.error("Paperless %s %s failed (%s): %s", method, path, response.status_code, response.text)
            response.raise_for_status()
        return response


class NullConverter:
    """Used when no Paperless instance is configured: every conversion is empty."""

    def extract_text(self, data: bytes, timeout: float, filename: str = "document.pdf") -> str:
        logger.debug("No document converter configured; skipping text extraction")
        return ""
