"""Configuration management for the mail invoice agent."""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, time, timedelta
from pathlib import Path
from typing import Literal, Sequence

from dotenv import load_dotenv
from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import DateRange

# Load .env early so BaseSettings can pick values up seamlessly.
load_dotenv()

DEFAULT_SEARCH_KEYWORDS = "factura;facturas;invoice;invoices;ticket;tickets;recibo;recibos"
DEFAULT_MARKETING_KEYWORDS = (
    "marketing;publicidad;promoción;descuento;oferta especial;newsletter;tickets to;win tickets"
)
# Subject patterns for mail that talks about an order or a shipment, not a bill.
DEFAULT_NON_INVOICE_PATTERNS = (
    r"\border (confirmation|confirmed|shipped)\b;"
    r"\byour order (has|is) (shipped|on its way)\b;"
    r"\bconfirmaci[oó]n de (pedido|env[ií]o)\b;"
    r"\btu pedido (ha sido|est[aá]) (enviado|en camino)\b;"
    r"\b(tracking|seguimiento de) (number|env[ií]o|pedido)\b"
)


def _split_list(value: str | Sequence[str] | None, coerce_lower: bool = True) -> list[str]:
    """Turn delimiter-separated env strings into cleaned lists."""
    if value is None:
        return []
    if isinstance(value, str):
        items = re.split(r"[;,]", value)
    else:
        items = list(value)
    cleaned: list[str] = []
    for item in items:
        trimmed = item.strip()
        if not trimmed:
            continue
        cleaned.append(trimmed.lower() if coerce_lower else trimmed)
    return cleaned


class Settings(BaseSettings):
    """App configuration derived from environment variables."""

    graph_tenant_id: str | None = Field(None, alias="GRAPH_TENANT_ID")
    graph_client_id: str = Field(..., alias="GRAPH_CLIENT_ID")
    graph_client_secret: str | None = Field(None, alias="GRAPH_CLIENT_SECRET")
    graph_mailbox: str | None = Field(None, alias="GRAPH_MAILBOX")
    graph_auth_mode: Literal["client_credentials", "device_code"] = Field(
        "device_code", alias="GRAPH_AUTH_MODE"
    )
    graph_authority: str | None = Field(None, alias="GRAPH_AUTHORITY")
    graph_scopes_raw: str = Field("Mail.ReadWrite;Files.ReadWrite", alias="GRAPH_SCOPES")
    graph_page_size: int = Field(50, alias="GRAPH_PAGE_SIZE")
    graph_token_cache: Path = Field(Path("data/msal_token_cache.bin"), alias="GRAPH_TOKEN_CACHE")

    search_keywords_raw: str = Field(DEFAULT_SEARCH_KEYWORDS, alias="SEARCH_KEYWORDS")
    priority_category: str | None = Field("Facturas", alias="PRIORITY_CATEGORY")
    search_start_date: date | None = Field(None, alias="SEARCH_START_DATE")
    search_end_date: date | None = Field(None, alias="SEARCH_END_DATE")
    mark_as_read: bool = Field(True, alias="MARK_AS_READ")

    issuer_aliases_raw: str = Field("", alias="ISSUER_ALIASES")
    marketing_keywords_raw: str = Field(DEFAULT_MARKETING_KEYWORDS, alias="MARKETING_KEYWORDS")
    non_invoice_patterns_raw: str = Field(
        DEFAULT_NON_INVOICE_PATTERNS, alias="NON_INVOICE_SUBJECT_PATTERNS"
    )

    vertex_project_id: str = Field(..., alias="VERTEX_AI_PROJECT_ID")
    vertex_location: str = Field("global", alias="VERTEX_AI_LOCATION")
    vertex_model: str = Field("gemini-3-flash-preview", alias="VERTEX_AI_MODEL")
    vertex_access_token: str | None = Field(None, alias="VERTEX_ACCESS_TOKEN")
    vertex_temperature: float = Field(0.1, alias="VERTEX_AI_TEMPERATURE")
    extraction_prompt_path: Path | None = Field(None, alias="EXTRACTION_PROMPT_PATH")

    drive_root_path: str = Field("Facturas", alias="DRIVE_ROOT_PATH")

    paperless_base_url: HttpUrl | None = Field(None, alias="PAPERLESS_BASE_URL")
    paperless_api_token: str | None = Field(None, alias="PAPERLESS_API_TOKEN")

    ledger_db: Path = Field(Path("data/invoices.db"), alias="LEDGER_DB")
    state_db: Path = Field(Path("data/state.db"), alias="STATE_DB")

    max_retries: int = Field(2, alias="MAX_RETRIES", ge=1)
    rate_limit_calls_per_minute: int = Field(60, alias="RATE_LIMIT_CALLS_PER_MINUTE", ge=1)
    rate_limiter_max_wait_seconds: float = Field(60.0, alias="RATE_LIMITER_MAX_WAIT_SECONDS")
    batch_size: int = Field(20, alias="BATCH_SIZE", ge=1)
    batch_pause_seconds: float = Field(0.5, alias="BATCH_PAUSE_SECONDS")
    max_threads_per_run: int = Field(100, alias="MAX_THREADS_PER_RUN", ge=1)
    max_execution_seconds: float = Field(330.0, alias="MAX_EXECUTION_SECONDS")
    max_message_seconds: float = Field(60.0, alias="MAX_MESSAGE_SECONDS")
    extraction_reserve_seconds: float = Field(10.0, alias="EXTRACTION_RESERVE_SECONDS")
    max_ai_call_seconds: float = Field(25.0, alias="MAX_AI_CALL_SECONDS")
    max_prompt_chars: int = Field(2000, alias="MAX_PROMPT_CHARS")
    multimodal_max_bytes: int = Field(4 * 1024 * 1024, alias="MULTIMODAL_MAX_BYTES")
    text_extraction_seconds: float = Field(20.0, alias="TEXT_EXTRACTION_SECONDS")
    text_extraction_attempts: int = Field(3, alias="TEXT_EXTRACTION_ATTEMPTS", ge=1)
    ledger_dedup_window: int = Field(200, alias="LEDGER_DEDUP_WINDOW", ge=1)
    processed_ids_cap: int = Field(5000, alias="PROCESSED_IDS_CAP", ge=1)
    circuit_breaker_threshold: int = Field(2, alias="CIRCUIT_BREAKER_THRESHOLD", ge=1)
    continuation_delay_seconds: float = Field(60.0, alias="CONTINUATION_DELAY_SECONDS")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def _validate_authentication(self):
        if self.graph_auth_mode == "client_credentials":
            if not self.graph_client_secret:
                raise ValueError("GRAPH_CLIENT_SECRET is required for client_credentials mode.")
            if not self.graph_mailbox:
                raise ValueError("GRAPH_MAILBOX is required for client_credentials mode.")
            if not (self.graph_tenant_id or self.graph_authority):
                raise ValueError(
                    "GRAPH_TENANT_ID or GRAPH_AUTHORITY must be provided for client_credentials mode."
                )
        else:
            if self.graph_mailbox:
                raise ValueError(
                    "GRAPH_MAILBOX must be omitted for device_code mode; the signed-in mailbox is used."
                )
        return self

    @model_validator(mode="after")
    def _validate_budgets(self):
        if self.max_ai_call_seconds >= self.max_message_seconds:
            raise ValueError("MAX_AI_CALL_SECONDS must be lower than MAX_MESSAGE_SECONDS.")
        if self.extraction_reserve_seconds >= self.max_message_seconds:
            raise ValueError("EXTRACTION_RESERVE_SECONDS must be lower than MAX_MESSAGE_SECONDS.")
        if self.max_message_seconds > self.max_execution_seconds:
            raise ValueError("MAX_MESSAGE_SECONDS cannot exceed MAX_EXECUTION_SECONDS.")
        if self.paperless_base_url and not self.paperless_api_token:
            raise ValueError("PAPERLESS_API_TOKEN is required when PAPERLESS_BASE_URL is set.")
        return self

    @field_validator(
        "graph_tenant_id",
        "graph_client_secret",
        "graph_mailbox",
        "graph_authority",
        "priority_category",
        "vertex_access_token",
        "extraction_prompt_path",
        "paperless_base_url",
        "paperless_api_token",
        "search_start_date",
        "search_end_date",
        mode="before",
    )
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @property
    def authority_url(self) -> str:
        if self.graph_authority:
            return self.graph_authority.rstrip("/")
        if self.graph_tenant_id:
            return f"https://login.microsoftonline.com/{self.graph_tenant_id}"
        return "https://login.microsoftonline.com/consumers"

    @property
    def graph_scopes(self) -> list[str]:
        """Scopes requested for delegated Graph auth."""
        scopes = _split_list(self.graph_scopes_raw, coerce_lower=False)
        return scopes or ["Mail.ReadWrite", "Files.ReadWrite"]

    @property
    def search_keywords(self) -> list[str]:
        return _split_list(self.search_keywords_raw, coerce_lower=True)

    @property
    def issuer_aliases(self) -> list[str]:
        return _split_list(self.issuer_aliases_raw, coerce_lower=True)

    @property
    def marketing_keywords(self) -> list[str]:
        return _split_list(self.marketing_keywords_raw, coerce_lower=True)

    @property
    def non_invoice_patterns(self) -> list[str]:
        # Patterns may legitimately contain commas, so only ';' separates them.
        return [item.strip() for item in self.non_invoice_patterns_raw.split(";") if item.strip()]

    @property
    def extraction_seconds(self) -> float:
        """Budget for the AI stage, leaving headroom for storage work in the message budget."""
        return self.max_message_seconds - self.extraction_reserve_seconds

    @property
    def vertex_endpoint(self) -> str:
        host = (
            "aiplatform.googleapis.com"
            if self.vertex_location == "global"
            else f"{self.vertex_location}-aiplatform.googleapis.com"
        )
        return (
            f"https://{host}/v1/projects/{self.vertex_project_id}/locations/"
            f"{self.vertex_location}/publishers/google/models/{self.vertex_model}:generateContent"
        )

    def search_range(self, today: date | None = None) -> DateRange:
        """Date window for mailbox searches; the end defaults to the end of today."""
        start = (
            datetime.combine(self.search_start_date, time.min, tzinfo=UTC)
            if self.search_start_date
            else None
        )
        end_day = self.search_end_date or today or datetime.now(tz=UTC).date()
        end = datetime.combine(end_day, time.min, tzinfo=UTC) + timedelta(days=1, microseconds=-1)
        return DateRange(start=start, end=end)

    def describe(self) -> dict[str, object]:
        """Non-secret view of the effective configuration."""
        return {
            "vertex_project_id": self.vertex_project_id,
            "vertex_location": self.vertex_location,
            "vertex_model": self.vertex_model,
            "graph_auth_mode": self.graph_auth_mode,
            "graph_mailbox": self.graph_mailbox or "me",
            "drive_root_path": self.drive_root_path,
            "ledger_db": str(self.ledger_db),
            "state_db": str(self.state_db),
            "search_keywords": self.search_keywords,
            "priority_category": self.priority_category,
            "search_range": self.search_range(),
            "issuer_aliases": self.issuer_aliases,
            "paperless": str(self.paperless_base_url) if self.paperless_base_url else None,
            "max_retries": self.max_retries,
            "rate_limit_calls_per_minute": self.rate_limit_calls_per_minute,
            "mark_as_read": self.mark_as_read,
        }
