# File: tests/unit/session/test_index_unit.py

import asyncio

import pytest
from lsprotocol.types import TextDocumentIdentifier
from pygls.uris import from_fs_path

from reason_bridge.merlin.protocol import END, START, MerlinResponse
from reason_bridge.session.index import IndexingError, compile_query

FOO = "file:///work/src/foo.re"


def _outline_item(name, line, kind="Value", children=None):
    return {
        "name": name,
        "kind": kind,
        "start": {"line": line, "col": 0},
        "end": {"line": line, "col": 10},
        "children": children or [],
    }


@pytest.fixture
def foo_outline():
    return [
        _outline_item("foo", 1),
        _outline_item("bar", 2),
        _outline_item("Inner", 3, kind="Module", children=[_outline_item("baz", 4)]),
    ]


# --- index_symbols / find_symbols ---


@pytest.mark.asyncio
async def test_index_symbols_qualifies_names_and_sets_relative_container(session, merlin, foo_outline):
    session.root_path = "/work"
    merlin.outlines[FOO] = foo_outline

    result = await session.index.index_symbols(TextDocumentIdentifier(uri=FOO))

    assert result is None
    records = session.index.find_symbols({})
    assert [r.name for r in records] == ["Inner", "Inner.baz", "bar", "foo"]
    assert {r.container_name for r in records} == {"src/foo.re"}
    assert all(r.location.uri == FOO for r in records)


@pytest.mark.asyncio
async def test_find_symbols_by_exact_name(session, merlin, foo_outline):
    merlin.outlines[FOO] = foo_outline
    await session.index.index_symbols(TextDocumentIdentifier(uri=FOO))

    records = session.index.find_symbols({"name": "foo"})
    assert len(records) == 1
    assert records[0].name == "foo"


@pytest.mark.asyncio
async def test_find_symbols_operators(session, merlin, foo_outline):
    merlin.outlines[FOO] = foo_outline
    await session.index.index_symbols(TextDocumentIdentifier(uri=FOO))
    index = session.index

    assert [r.name for r in index.find_symbols({"name": {"$startswith": "Inner."}})] == ["Inner.baz"]
    assert [r.name for r in index.find_symbols({"name": {"$contains": "a"}})] == ["Inner.baz", "bar"]
    assert [r.name for r in index.find_symbols({"name": {"$regex": "^b"}})] == ["bar"]
    assert len(index.find_symbols({"location.uri": FOO})) == 4
    assert [r.name for r in index.find_symbols(lambda r: r.name.endswith("oo"))] == ["foo"]


@pytest.mark.asyncio
async def test_find_symbols_failure_returns_empty(session, merlin, foo_outline):
    merlin.outlines[FOO] = foo_outline
    await session.index.index_symbols(TextDocumentIdentifier(uri=FOO))

    assert session.index.find_symbols({"name": {"$regex": "("}}) == []
    assert session.index.find_symbols({"nonexistent": 1}) == []
    assert session.index.find_symbols({"name": {"$bogus": 1}}) == []
    assert session.index.find_symbols(42) == []


def test_compile_query_rejects_non_queries():
    with pytest.raises(TypeError):
        compile_query(42)


@pytest.mark.asyncio
async def test_index_symbols_failure_signal_inserts_nothing(session, merlin):
    merlin.outlines[FOO] = MerlinResponse("error", "no outline")

    result = await session.index.index_symbols(TextDocumentIdentifier(uri=FOO))

    assert isinstance(result, IndexingError)
    assert result.uri == FOO
    assert result.klass == "error"
    assert len(session.index) == 0


# --- remove / refresh ---


@pytest.mark.asyncio
async def test_remove_symbols_matches_uri_only(session, merlin, foo_outline):
    other = "file:///work/src/other.re"
    merlin.outlines[FOO] = foo_outline
    merlin.outlines[other] = [_outline_item("other", 1)]
    await session.index.index_symbols(TextDocumentIdentifier(uri=FOO))
    await session.index.index_symbols(TextDocumentIdentifier(uri=other))

    session.index.remove_symbols(TextDocumentIdentifier(uri=FOO))

    assert [r.name for r in session.index.find_symbols({})] == ["other"]


@pytest.mark.asyncio
async def test_refresh_symbols_is_idempotent(session, merlin, foo_outline):
    merlin.outlines[FOO] = foo_outline
    document = TextDocumentIdentifier(uri=FOO)

    await session.index.refresh_symbols(document)
    once = [(r.name, r.location.range.start.line) for r in session.index.find_symbols({})]
    await session.index.refresh_symbols(document)
    twice = [(r.name, r.location.range.start.line) for r in session.index.find_symbols({})]

    assert once == twice
    assert len(twice) == 4


@pytest.mark.asyncio
async def test_refresh_symbols_failure_leaves_document_absent(session, merlin, foo_outline):
    merlin.outlines[FOO] = foo_outline
    document = TextDocumentIdentifier(uri=FOO)
    await session.index.refresh_symbols(document)

    merlin.outlines[FOO] = MerlinResponse("exception", "gone")
    result = await session.index.refresh_symbols(document)

    assert isinstance(result, IndexingError)
    assert len(session.index) == 0


# --- populate ---


@pytest.fixture
def workspace_tree(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.re").write_text("let a = 1;")
    (tmp_path / "src" / "a.rei").write_text("let a: int;")
    (tmp_path / "src" / "b.ml").write_text("let b = 2")
    (tmp_path / "_build").mkdir()
    (tmp_path / "_build" / "copy.ml").write_text("let stale = 0")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "hook.ml").write_text("let hidden = 0")
    return tmp_path


@pytest.mark.asyncio
async def test_populate_walks_modules_once(session, connection, merlin, workspace_tree):
    session.root_path = str(workspace_tree)
    origin = from_fs_path(str(workspace_tree / "src" / "a.re"))
    other = from_fs_path(str(workspace_tree / "src" / "b.ml"))
    connection.workspace.put(origin, "let a = 1; let a2 = 2;")
    merlin.outlines[origin] = [_outline_item("a", 1), _outline_item("a2", 1)]
    merlin.outlines[other] = [_outline_item("b", 1)]

    await session.index.populate(TextDocumentIdentifier(uri=origin))
    await session.index.populate(TextDocumentIdentifier(uri=origin))

    assert session.index.populated
    synced = [uri for _, uri in merlin.full_syncs()]
    assert synced == [origin, other]
    assert merlin.texts[origin] == "let a = 1; let a2 = 2;"
    assert merlin.texts[other] == "let b = 2"
    records = session.index.find_symbols({})
    assert [r.name for r in records] == ["a", "a2", "b"]
    assert {r.container_name for r in records} == {"src/a.re", "src/b.ml"}


@pytest.mark.asyncio
async def test_populate_concurrent_triggers_run_once(session, connection, merlin, workspace_tree):
    session.root_path = str(workspace_tree)
    merlin.delay = 0.005
    origin = from_fs_path(str(workspace_tree / "src" / "a.re"))
    connection.workspace.put(origin, "let a = 1;")

    await asyncio.gather(
        *(session.index.populate(TextDocumentIdentifier(uri=origin)) for _ in range(5))
    )

    synced = [uri for _, uri in merlin.full_syncs()]
    assert sorted(synced) == sorted(set(synced))
    assert len(synced) == 2
    assert all(op[1] == START and op[2] == END for op, _ in merlin.sync_calls)


@pytest.mark.asyncio
async def test_populate_without_root_indexes_origin_only(session, connection, merlin):
    connection.workspace.put(FOO, "let foo = 1")
    merlin.outlines[FOO] = [_outline_item("foo", 1)]

    await session.index.populate(TextDocumentIdentifier(uri=FOO))

    assert [uri for _, uri in merlin.full_syncs()] == [FOO]
    assert [r.name for r in session.index.find_symbols({})] == ["foo"]
