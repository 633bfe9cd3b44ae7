"""Microsoft Graph session plus the mailbox search used to find invoice candidates."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator, List, Optional
from urllib.parse import quote

import msal
import requests
from requests import Response

from .config import Settings
from .models import AttachmentRef, CandidateMessage, DateRange
from .utils import html_to_text, isoformat_utc, parse_graph_datetime

logger = logging.getLogger(__name__)

FILE_ATTACHMENT_TYPE = "#microsoft.graph.fileAttachment"


class GraphSession:
    """Authenticates with Graph and performs requests on behalf of the mail and drive clients."""

    GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
    GRAPH_BASE = "https://graph.microsoft.com/v1.0"
    REQUEST_TIMEOUT = 30

    def __init__(self, settings: Settings, session: requests.Session | None = None) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self.scopes = settings.graph_scopes
        self.auth_mode = settings.graph_auth_mode
        self.authority = settings.authority_url
        self._token_cache = None

        if self.auth_mode == "client_credentials":
            self.app = msal.ConfidentialClientApplication(
                client_id=settings.graph_client_id,
                client_credential=settings.graph_client_secret,
                authority=self.authority,
            )
        else:
            token_cache = msal.SerializableTokenCache()
            cache_path = settings.graph_token_cache
            if cache_path.exists():
                token_cache.deserialize(cache_path.read_text())
            self._token_cache = token_cache
            self.app = msal.PublicClientApplication(
                client_id=settings.graph_client_id,
                authority=self.authority,
                token_cache=token_cache,
            )

    def user_root(self) -> str:
        if self.settings.graph_mailbox:
            mailbox = quote(self.settings.graph_mailbox)
            return f"/users/{mailbox}"
        return "/me"

    def url(self, path: str) -> str:
        return f"{self.GRAPH_BASE}{self.user_root()}{path}"

    def request(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        data: bytes | None = None,
        headers: dict | None = None,
        stream: bool = False,
        allow_not_found: bool = False,
    ) -> Optional[Response]:
        """Send an authenticated request; returns None for a tolerated 404."""
        merged = {"Authorization": f"Bearer {self._acquire_token()}"}
        merged.update(headers or {})
        resp = self.session.request(
            method,
            url,
            headers=merged,
            params=params,
            json=json,
            data=data,
            stream=stream,
            timeout=self.REQUEST_TIMEOUT,
        )
        if allow_not_found and resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            logger.error("Graph %s failed (%s): %s", method, resp.status_code, resp.text)
            resp.raise_for_status()
        return resp

    def iter_pages(self, url: str, params: dict | None = None, headers: dict | None = None) -> Iterator[dict]:
        """Yield every item of a collection, following ``@odata.nextLink``."""
        while url:
            logger.debug("Fetching Graph page %s", url)
            payload = self.request("GET", url, params=params, headers=headers).json()
            yield from payload.get("value", [])
            url = payload.get("@odata.nextLink")
            params = None  # the next link already carries the query

    def _acquire_token(self) -> str:
        if self.auth_mode == "client_credentials":
            return self._acquire_token_client_credentials()
        return self._acquire_token_device_flow()

    def _acquire_token_client_credentials(self) -> str:
        result = self.app.acquire_token_silent(self.GRAPH_SCOPE, account=None)
        if not result:
            result = self.app.acquire_token_for_client(scopes=self.GRAPH_SCOPE)
        if "access_token" not in result:
            raise RuntimeError(f"Unable to obtain Graph token: {result.get('error_description')}")
        return result["access_token"]

    def _acquire_token_device_flow(self) -> str:
        accounts = self.app.get_accounts()
        result = None
        if accounts:
            result = self.app.acquire_token_silent(self.scopes, account=accounts[0])
        if not result:
            flow = self.app.initiate_device_flow(scopes=self.scopes)
            if "user_code" not in flow:
                raise RuntimeError(f"Unable to start device code flow: {flow}")
            logger.info(flow.get("message"))
            result = self.app.acquire_token_by_device_flow(flow)
        if "access_token" not in result:
            raise RuntimeError(f"Unable to obtain Graph token: {result.get('error_description')}")
        self._persist_token_cache()
        return result["access_token"]

    def _persist_token_cache(self) -> None:
        if not self._token_cache or not self._token_cache.has_state_changed:
            return
        cache_path: Path = self.settings.graph_token_cache
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        cache_path.write_text(self._token_cache.serialize())


def _quote_odata(value: str) -> str:
    return value.replace("'", "''")


def build_message_filter(
    keywords: Iterable[str], label_hint: Optional[str], date_range: DateRange
) -> str:
    """OData ``$filter`` for one search strategy: a category and/or subject keywords within a date window."""
    clauses: List[str] = []
    if date_range.start:
        clauses.append(f"receivedDateTime ge {isoformat_utc(date_range.start)}")
    if date_range.end:
        clauses.append(f"receivedDateTime le {isoformat_utc(date_range.end)}")
    if label_hint:
        clauses.append(f"categories/any(c:c eq '{_quote_odata(label_hint)}')")
    keyword_clauses = [f"contains(subject,'{_quote_odata(kw)}')" for kw in keywords if kw]
    if keyword_clauses:
        clauses.append("(" + " or ".join(keyword_clauses) + ")")
    return " and ".join(clauses)


class GraphMailSource:
    """Message source backed by an Outlook mailbox."""

    MESSAGE_FIELDS = "id,conversationId,subject,body,receivedDateTime,hasAttachments,isRead"

    def __init__(self, graph: GraphSession, page_size: int = 50) -> None:
        self.graph = graph
        self.page_size = page_size

    def search(
        self, keywords: Iterable[str], label_hint: Optional[str], date_range: DateRange
    ) -> list[CandidateMessage]:
        """Return messages matching the category or any subject keyword, inside ``date_range``."""
        keywords = list(keywords)
        if not keywords and not label_hint:
            return []
        params = {
            "$select": self.MESSAGE_FIELDS,
            "$filter": build_message_filter(keywords, label_hint, date_range),
            "$top": self.page_size,
        }
        headers = {"Prefer": 'outlook.body-content-type="html"'}
        logger.info("Searching mailbox with filter %s", params["$filter"])

        messages: list[CandidateMessage] = []
        for raw in self.graph.iter_pages(self.graph.url("/messages"), params=params, headers=headers):
            received = parse_graph_datetime(raw["receivedDateTime"])
            if not date_range.contains(received):
                continue
            attachments = (
                self._list_file_attachments(raw["id"]) if raw.get("hasAttachments") else []
            )
            messages.append(self._to_message(raw, attachments))
        logger.info("Search returned %s messages", len(messages))
        return messages

    def fetch_attachment_bytes(self, ref: AttachmentRef) -> bytes:
        url = self.graph.url(f"/messages/{ref.message_id}/attachments/{ref.attachment_id}/$value")
        return self.graph.request("GET", url, stream=True).content

    def mark_read(self, message: CandidateMessage) -> None:
        self.graph.request(
            "PATCH", self.graph.url(f"/messages/{message.message_id}"), json={"isRead": True}
        )
        logger.debug("Marked message %s as read", message.message_id)

    def _list_file_attachments(self, message_id: str) -> list[AttachmentRef]:
        url = self.graph.url(f"/messages/{message_id}/attachments")
        params = {"$select": "id,name,contentType,size,isInline"}
        return [
            self._to_attachment(message_id, raw)
            for raw in self.graph.iter_pages(url, params=params)
            if raw.get("@odata.type") == FILE_ATTACHMENT_TYPE
        ]

    @staticmethod
    def _to_message(raw: dict, attachments: list[AttachmentRef]) -> CandidateMessage:
        body = raw.get("body") or {}
        content = body.get("content") or ""
        is_html = (body.get("contentType") or "").lower() == "html"
        return CandidateMessage(
            message_id=raw["id"],
            thread_id=raw.get("conversationId") or raw["id"],
            subject=raw.get("subject") or "",
            body=html_to_text(content) if is_html else content,
            html_body=content if is_html else "",
            received=parse_graph_datetime(raw["receivedDateTime"]),
            attachments=tuple(attachments),
        )

    @staticmethod
    def _to_attachment(message_id: str, raw: dict) -> AttachmentRef:
        return AttachmentRef(
            message_id=message_id,
            attachment_id=raw["id"],
            name=raw.get("name") or "",
            content_type=raw.get("contentType") or "application/octet-stream",
            size=raw.get("size") or 0,
        )
