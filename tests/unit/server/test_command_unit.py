# File: tests/unit/server/test_command_unit.py

import pytest
from lsprotocol.types import TextDocumentIdentifier
from pygls.uris import from_fs_path

from reason_bridge.server import command


@pytest.mark.parametrize(
    "uri, expected",
    [
        ("file:///w/a.mli", True),
        ("file:///w/a.rei", True),
        ("file:///w/a.ml", False),
        ("file:///w/a.re", False),
        ("file:///w/a.mli.bak", False),
    ],
)
def test_is_interface(uri, expected):
    assert command.is_interface(uri) is expected


@pytest.mark.asyncio
async def test_get_text_document_prefers_open_buffer(session, connection, tmp_path):
    path = tmp_path / "a.re"
    path.write_text("on disk")
    uri = from_fs_path(str(path))
    connection.workspace.put(uri, "in editor")

    document = await command.get_text_document(session, TextDocumentIdentifier(uri=uri))

    assert document.source == "in editor"


@pytest.mark.asyncio
async def test_get_text_document_reads_disk_when_closed(session, tmp_path):
    path = tmp_path / "b.ml"
    path.write_text("let b = 2")

    document = await command.get_text_document(
        session, TextDocumentIdentifier(uri=from_fs_path(str(path)))
    )

    assert document.source == "let b = 2"


@pytest.mark.asyncio
async def test_get_text_document_missing_file_is_empty(session, tmp_path):
    uri = from_fs_path(str(tmp_path / "missing.re"))
    document = await command.get_text_document(session, TextDocumentIdentifier(uri=uri))
    assert document.source == ""


@pytest.mark.asyncio
async def test_get_modules_is_origin_first_and_stable(session, tmp_path):
    (tmp_path / "lib").mkdir()
    (tmp_path / "lib" / "z.re").write_text("")
    (tmp_path / "lib" / "a.ml").write_text("")
    (tmp_path / "main.re").write_text("")
    (tmp_path / "README.md").write_text("")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.re").write_text("")
    session.root_path = str(tmp_path)
    origin = from_fs_path(str(tmp_path / "lib" / "z.re"))

    modules = await command.get_modules(session, TextDocumentIdentifier(uri=origin))
    again = await command.get_modules(session, TextDocumentIdentifier(uri=origin))

    assert [m.uri for m in modules] == [
        origin,
        from_fs_path(str(tmp_path / "main.re")),
        from_fs_path(str(tmp_path / "lib" / "a.ml")),
    ]
    assert [m.uri for m in again] == [m.uri for m in modules]


@pytest.mark.asyncio
async def test_get_modules_without_root_is_origin_only(session):
    modules = await command.get_modules(session, TextDocumentIdentifier(uri="file:///x/y.re"))
    assert [m.uri for m in modules] == ["file:///x/y.re"]
