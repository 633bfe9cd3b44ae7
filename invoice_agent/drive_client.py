"""OneDrive storage for invoice PDFs, organised in ``YYYY-MM`` folders."""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional
from urllib.parse import quote

from .graph_client import GraphSession
from .models import PDF_CONTENT_TYPE, FileRef, FolderRef
from .utils import year_month

logger = logging.getLogger(__name__)


class OneDriveStore:
    """Folder/file operations on the signed-in (or configured) user's OneDrive."""

    def __init__(self, graph: GraphSession, root_path: str) -> None:
        self.graph = graph
        self.root_path = root_path.strip("/")
        self._root: Optional[FolderRef] = None
        self._folders: dict[str, FolderRef] = {}

    def root_folder(self) -> FolderRef:
        """The configured root folder, created segment by segment when missing."""
        if self._root is None:
            folder = FolderRef(folder_id="root", name="")
            for segment in filter(None, self.root_path.split("/")):
                folder = self._ensure_child_folder(folder, segment)
            self._root = folder
        return self._root

    def ensure_date_folder(self, day: date) -> FolderRef:
        name = year_month(day)
        if name not in self._folders:
            self._folders[name] = self._ensure_child_folder(self.root_folder(), name)
        return self._folders[name]

    def save_file(
        self, data: bytes, name: str, folder: FolderRef, content_type: str = PDF_CONTENT_TYPE
    ) -> FileRef:
        url = self._item_url(folder, f":/{quote(name)}:/content")
        response = self.graph.request(
            "PUT",
            url,
            params={"@microsoft.graph.conflictBehavior": "rename"},
            data=data,
            headers={"Content-Type": content_type},
        )
        file = self._to_file(response.json())
        logger.info("Stored %s (%s bytes) in %s", file.name, len(data), folder.name or "/")
        return file

    def move_file(self, file: FileRef, folder: FolderRef) -> FileRef:
        response = self.graph.request(
            "PATCH",
            self.graph.url(f"/drive/items/{file.file_id}"),
            params={"@microsoft.graph.conflictBehavior": "rename"},
            json={"parentReference": {"id": folder.folder_id}},
        )
        self._refresh(file, response.json())
        logger.info("Moved %s to %s", file.name, folder.name)
        return file

    def rename_file(self, file: FileRef, name: str) -> FileRef:
        previous = file.name
        response = self.graph.request(
            "PATCH",
            self.graph.url(f"/drive/items/{file.file_id}"),
            params={"@microsoft.graph.conflictBehavior": "rename"},
            json={"name": name},
        )
        self._refresh(file, response.json())
        logger.info("Renamed %s to %s", previous, file.name)
        return file

    def delete(self, file: FileRef) -> None:
        self.graph.request("DELETE", self.graph.url(f"/drive/items/{file.file_id}"))
        logger.info("Deleted %s", file.name)

    def url_of(self, file: FileRef) -> str:
        response = self.graph.request(
            "GET", self.graph.url(f"/drive/items/{file.file_id}"), params={"$select": "id,name,webUrl"}
        )
        self._refresh(file, response.json())
        return file.web_url

    def download_as_pdf(self, file: FileRef) -> bytes:
        """Let OneDrive render a stored document (e.g. HTML) as PDF."""
        response = self.graph.request(
            "GET",
            self.graph.url(f"/drive/items/{file.file_id}/content"),
            params={"format": "pdf"},
            stream=True,
        )
        return response.content

    def _ensure_child_folder(self, parent: FolderRef, name: str) -> FolderRef:
        response = self.graph.request(
            "GET", self._item_url(parent, f":/{quote(name)}"), allow_not_found=True
        )
        if response is None:
            logger.info("Creating folder %s", name)
            response = self.graph.request(
                "POST",
                self._item_url(parent, "/children"),
                json={"name": name, "folder": {}, "@microsoft.graph.conflictBehavior": "fail"},
            )
        payload = response.json()
        return FolderRef(folder_id=payload["id"], name=payload.get("name") or name)

    def _item_url(self, folder: FolderRef, suffix: str) -> str:
        if folder.folder_id == "root":
            return self.graph.url(f"/drive/root{suffix}")
        return self.graph.url(f"/drive/items/{folder.folder_id}{suffix}")

    @staticmethod
    def _to_file(payload: dict) -> FileRef:
        return FileRef(
            file_id=payload["id"], name=payload.get("name", ""), web_url=payload.get("webUrl", "")
        )

    @staticmethod
    def _refresh(file: FileRef, payload: dict) -> None:
        file.name = payload.get("name", file.name)
        file.web_url = payload.get("webUrl", file.web_url)
