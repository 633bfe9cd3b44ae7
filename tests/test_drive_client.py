from __future__ import annotations

from datetime import date
from unittest.mock import Mock

from invoice_agent.drive_client import OneDriveStore
from invoice_agent.models import FileRef, FolderRef


def response(payload: dict) -> Mock:
    resp = Mock()
    resp.json.return_value = payload
    return resp


def fake_graph() -> Mock:
    graph = Mock()
    graph.url.side_effect = lambda path: f"https://graph.test/me{path}"
    return graph


def test_root_folder_is_created_when_missing():
    graph = fake_graph()
    graph.request.side_effect = [None, response({"id": "folder-root", "name": "Facturas"})]
    store = OneDriveStore(graph, "/Facturas/")

    folder = store.root_folder()
    store.root_folder()

    assert folder == FolderRef("folder-root", "Facturas")
    lookup, create = graph.request.call_args_list
    assert lookup.args == ("GET", "https://graph.test/me/drive/root:/Facturas")
    assert lookup.kwargs == {"allow_not_found": True}
    assert create.args == ("POST", "https://graph.test/me/drive/root/children")
    assert create.kwargs["json"]["name"] == "Facturas"
    assert graph.request.call_count == 2


def test_date_folder_is_reused_within_a_run():
    graph = fake_graph()
    graph.request.side_effect = [
        response({"id": "folder-root", "name": "Facturas"}),
        response({"id": "folder-2024-05", "name": "2024-05"}),
    ]
    store = OneDriveStore(graph, "Facturas")

    first = store.ensure_date_folder(date(2024, 5, 10))
    second = store.ensure_date_folder(date(2024, 5, 31))

    assert first == second == FolderRef("folder-2024-05", "2024-05")
    assert graph.request.call_args_list[1].args == (
        "GET",
        "https://graph.test/me/drive/items/folder-root:/2024-05",
    )


def test_save_file_uploads_with_rename_on_conflict():
    graph = fake_graph()
    graph.request.return_value = response(
        {"id": "file-1", "name": "factura 1.pdf", "webUrl": "https://onedrive.test/factura%201.pdf"}
    )
    store = OneDriveStore(graph, "Facturas")

    file = store.save_file(b"%PDF", "factura.pdf", FolderRef("folder-root", "Facturas"))

    assert file == FileRef("file-1", "factura 1.pdf", "https://onedrive.test/factura%201.pdf")
    call = graph.request.call_args
    assert call.args == ("PUT", "https://graph.test/me/drive/items/folder-root:/factura.pdf:/content")
    assert call.kwargs["params"] == {"@microsoft.graph.conflictBehavior": "rename"}
    assert call.kwargs["headers"] == {"Content-Type": "application/pdf"}


def test_rename_move_and_url_update_the_file_ref():
    graph = fake_graph()
    graph.request.side_effect = [
        response({"id": "file-1", "name": "Acme_A-1_2024-05-10.pdf", "webUrl": "https://onedrive.test/root/a"}),
        response({"id": "file-1", "name": "Acme_A-1_2024-05-10.pdf", "webUrl": "https://onedrive.test/2024-05/a"}),
        response({"id": "file-1", "name": "Acme_A-1_2024-05-10.pdf", "webUrl": "https://onedrive.test/2024-05/a"}),
    ]
    store = OneDriveStore(graph, "Facturas")
    file = FileRef("file-1", "factura.pdf")

    store.rename_file(file, "Acme_A-1_2024-05-10.pdf")
    store.move_file(file, FolderRef("folder-2024-05", "2024-05"))
    url = store.url_of(file)

    assert file.name == "Acme_A-1_2024-05-10.pdf"
    assert url == "https://onedrive.test/2024-05/a"
    rename, move, _ = graph.request.call_args_list
    assert rename.kwargs["json"] == {"name": "Acme_A-1_2024-05-10.pdf"}
    assert move.kwargs["json"] == {"parentReference": {"id": "folder-2024-05"}}


def test_delete_and_pdf_download():
    graph = fake_graph()
    graph.request.return_value.content = b"%PDF-converted"
    store = OneDriveStore(graph, "Facturas")
    file = FileRef("file-9", "email.html")

    assert store.download_as_pdf(file) == b"%PDF-converted"
    assert graph.request.call_args.kwargs["params"] == {"format": "pdf"}
    store.delete(file)
    assert graph.request.call_args.args == ("DELETE", "https://graph.test/me/drive/items/file-9")
