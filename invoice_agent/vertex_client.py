"""Vertex AI Gemini client that turns email/PDF content into validated invoice records."""

from __future__ import annotations

import base64
import json
import logging
import random
import time
from typing import Any, Callable, Optional

import google.auth
import requests
from google.auth.transport.requests import Request as GoogleAuthRequest

from .budget import TimeBudgetGuard
from .config import Settings
from .errors import FatalAPIFailure, ParseFailure, RetriableAPIFailure, TimeoutFailure
from .models import PDF_CONTENT_TYPE, InvoiceRecord
from .numeric import normalize_amounts
from .prompts import MULTIMODAL_CONTENT, load_prompt, render_prompt
from .rate_limiter import RateLimiter
from .response_parser import SAMPLE_LENGTH, parse_model_output
from .validator import InvoiceValidator, ValidationResult

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
RETRIABLE_STATUS_CODES = frozenset({429, 500, 503})
MAX_BACKOFF_SECONDS = 10.0


class AccessTokenProvider:
    """Bearer tokens from a fixed token or Application Default Credentials."""

    def __init__(self, static_token: str | None = None) -> None:
        self.static_token = static_token
        self._credentials = None

    def __call__(self) -> str:
        if self.static_token:
            return self.static_token
        if self._credentials is None:
            self._credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
        if not self._credentials.valid:
            self._credentials.refresh(GoogleAuthRequest())
        return self._credentials.token


class VertexClient:
    """Rate-limited, deadline-aware ``generateContent`` client with retries."""

    def __init__(
        self,
        settings: Settings,
        rate_limiter: RateLimiter,
        validator: InvoiceValidator,
        session: requests.Session | None = None,
        token_provider: Callable[[], str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.validator = validator
        self.session = session or requests.Session()
        self.token_provider = token_provider or AccessTokenProvider(settings.vertex_access_token)
        self.endpoint = settings.vertex_endpoint
        self.prompt_template = load_prompt(settings.extraction_prompt_path)
        self._sleep = sleep
        self._jitter = jitter

    def extract(
        self,
        content: str,
        *,
        deadline: TimeBudgetGuard,
        file_bytes: Optional[bytes] = None,
        max_retries: Optional[int] = None,
    ) -> ValidationResult:
        """Extract and validate invoice data from ``content`` (and an optional PDF).

        Raises TimeoutFailure as soon as any enclosing budget runs out, and the
        last API/parse failure once the retries are exhausted.
        """
        retries = self.settings.max_retries if max_retries is None else max_retries
        extraction = deadline.child(self.settings.extraction_seconds, "extraction")

        if file_bytes is not None and len(file_bytes) > self.settings.multimodal_max_bytes:
            logger.warning(
                "Document of %s bytes is above the multimodal limit; sending text only",
                len(file_bytes),
            )
            file_bytes = None
        prompt = self._build_prompt(content, file_bytes)

        logger.info(
            "Extracting invoice data (prompt=%s chars, document=%s, retries=%s, budget=%.1fs)",
            len(prompt),
            len(file_bytes) if file_bytes else 0,
            retries,
            extraction.remaining(),
        )
        extraction.check_or_fail("before rate limiter")
        self.rate_limiter.await_admission(
            min(self.settings.rate_limiter_max_wait_seconds, extraction.remaining())
        )
        extraction.check_or_fail("after rate limiter")

        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._attempt(prompt, file_bytes, extraction, attempt)
            except TimeoutFailure as exc:
                logger.error("Extraction timed out on attempt %s: %s", attempt, exc)
                raise
            except (FatalAPIFailure, ParseFailure) as exc:
                if attempt >= retries:
                    logger.error("Extraction failed after %s attempts: %s", attempt, exc)
                    raise
                logger.warning("Attempt %s/%s failed without backoff: %s", attempt, retries, exc)
                continue
            except RetriableAPIFailure as exc:
                if attempt >= retries:
                    logger.error("Extraction failed after %s attempts: %s", attempt, exc)
                    raise
                self._backoff(attempt, retries, exc, extraction)
                continue
            logger.info(
                "Extraction finished in %.1fs after %s attempt(s): %s",
                extraction.elapsed(),
                attempt,
                type(result).__name__,
            )
            return result

    def _backoff(
        self, attempt: int, retries: int, error: RetriableAPIFailure, extraction: TimeBudgetGuard
    ) -> None:
        delay = min(2**attempt + self._jitter(0.0, 1.0), MAX_BACKOFF_SECONDS)
        extraction.check_or_fail("before backoff")
        if delay >= extraction.remaining():
            raise TimeoutFailure(
                extraction.scope, extraction.elapsed() + delay, extraction.budget, "backoff"
            ) from error
        logger.warning(
            "Attempt %s/%s failed (%s); retrying in %.2fs", attempt, retries, error, delay
        )
        self._sleep(delay)
        extraction.check_or_fail("after backoff")

    def _attempt(
        self,
        prompt: str,
        file_bytes: Optional[bytes],
        extraction: TimeBudgetGuard,
        attempt: int,
    ) -> ValidationResult:
        extraction.check_or_fail(f"before attempt {attempt}")
        self.rate_limiter.record_call()
        call = extraction.child(self.settings.max_ai_call_seconds, "ai_call")
        response = self._call_api(prompt, file_bytes, call)
        call.check_or_fail("after call")

        parsed = parse_model_output(self._response_text(response))
        extraction.check_or_fail("after parse")
        record = InvoiceRecord.from_payload(normalize_amounts(parsed))
        return self.validator.validate(record)

    def _build_prompt(self, content: str, file_bytes: Optional[bytes]) -> str:
        if file_bytes is not None:
            return render_prompt(self.prompt_template, MULTIMODAL_CONTENT)
        limit = self.settings.max_prompt_chars
        text = content or ""
        if len(text) > limit:
            logger.warning("Content of %s chars truncated to %s", len(text), limit)
            text = text[:limit]
        return render_prompt(self.prompt_template, text)

    def _call_api(
        self, prompt: str, file_bytes: Optional[bytes], call: TimeBudgetGuard
    ) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [{"text": prompt}]
        if file_bytes is not None:
            parts.append(
                {
                    "inline_data": {
                        "mime_type": PDF_CONTENT_TYPE,
                        "data": base64.b64encode(file_bytes).decode("ascii"),
                    }
                }
            )
        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"temperature": self.settings.vertex_temperature},
        }
        headers = {
            "Authorization": f"Bearer {self.token_provider()}",
            "Content-Type": "application/json",
        }

        timeout = call.remaining()
        if timeout <= 0:
            raise TimeoutFailure(call.scope, call.elapsed(), call.budget, "before request")
        logger.debug("Calling Vertex AI (%s parts, timeout %.1fs)", len(parts), timeout)
        try:
            response = self.session.post(self.endpoint, json=payload, headers=headers, timeout=timeout)
        except requests.exceptions.ReadTimeout as exc:
            raise TimeoutFailure(call.scope, call.elapsed(), call.budget, "waiting for response") from exc
        except requests.ConnectionError as exc:
            logger.warning("Transient network error calling Vertex AI: %s", exc)
            raise RetriableAPIFailure(f"network error after {call.elapsed():.1f}s: {exc}") from exc
        except requests.RequestException as exc:
            raise FatalAPIFailure(f"Vertex AI request failed: {exc}") from exc

        if response.status_code in RETRIABLE_STATUS_CODES:
            logger.warning(
                "Retriable Vertex AI error (%s): %s", response.status_code, response.text[:SAMPLE_LENGTH]
            )
            raise RetriableAPIFailure(
                f"Vertex AI API error: {response.status_code}", response.status_code
            )
        if response.status_code != 200:
            logger.error("Vertex AI request failed (%s): %s", response.status_code, response.text)
            raise FatalAPIFailure(
                f"Vertex AI API error: {response.status_code}", response.status_code
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ParseFailure(exc, sample=response.text[:SAMPLE_LENGTH]) from exc

    @staticmethod
    def _response_text(response: dict[str, Any]) -> str:
        try:
            parts = response["candidates"][0]["content"]["parts"]
            texts = [part["text"] for part in parts if "text" in part and not part.get("thought")]
        except (KeyError, IndexError, TypeError) as exc:
            raise ParseFailure(
                f"unexpected response shape: {exc!r}", sample=json.dumps(response)[:SAMPLE_LENGTH]
            ) from exc
        if not texts:
            raise ParseFailure("response has no text parts", sample=json.dumps(response)[:SAMPLE_LENGTH])
        return "".join(texts)
