# File: tests/conftest.py

"""Shared fakes for the editor connection and the merlin analyzer."""

import asyncio
from typing import Any, Dict, List, Optional, Tuple, Union
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from pygls.workspace import TextDocument

from reason_bridge.merlin.protocol import END, START, MerlinResponse
from reason_bridge.server.session import Session


def apply_tell(text: str, start: Any, end: Any, replacement: str) -> str:
    """Applies a merlin `tell` to a string (positions are 1-based lines)."""

    def offset(position: Any) -> int:
        if position == START:
            return 0
        if position == END:
            return len(text)
        lines = text.split("\n")
        before = lines[: position["line"] - 1]
        return sum(len(line) + 1 for line in before) + position["col"]

    return text[: offset(start)] + replacement + text[offset(end):]


class FakeMerlin:
    """In-memory analyzer: keeps per-document text and canned query results."""

    def __init__(self):
        self.texts: Dict[str, str] = {}
        self.errors: Dict[str, Union[List[Dict[str, Any]], MerlinResponse]] = {}
        self.outlines: Dict[str, Union[List[Dict[str, Any]], MerlinResponse]] = {}
        self.sync_responses: Dict[str, MerlinResponse] = {}
        self.sync_calls: List[Tuple[List[Any], str]] = []
        self.query_calls: List[Tuple[List[Any], str]] = []
        self.delay = 0.0
        self.cwd: Optional[str] = None
        self.initialized = False
        self.closed = False

    async def initialize(self) -> None:
        self.initialized = True

    async def sync(self, operation: List[Any], uri: str) -> MerlinResponse:
        self.sync_calls.append((operation, uri))
        if self.delay:
            await asyncio.sleep(self.delay)
        if uri in self.sync_responses:
            return self.sync_responses[uri]
        _, start, end, text = operation
        self.texts[uri] = apply_tell(self.texts.get(uri, ""), start, end, text)
        return MerlinResponse("return", True)

    async def query(self, request: List[Any], uri: str) -> MerlinResponse:
        self.query_calls.append((request, uri))
        if self.delay:
            await asyncio.sleep(self.delay)
        table = self.errors if request[0] == "errors" else self.outlines
        value = table.get(uri, [])
        if isinstance(value, MerlinResponse):
            return value
        return MerlinResponse("return", value)

    async def close(self) -> None:
        self.closed = True

    def full_syncs(self, uri: Optional[str] = None) -> List[Tuple[List[Any], str]]:
        return [
            (op, u)
            for op, u in self.sync_calls
            if op[1] == START and op[2] == END and (uri is None or u == uri)
        ]


class FakeWorkspace:
    def __init__(self):
        self.text_documents: Dict[str, TextDocument] = {}

    def get_text_document(self, uri: str) -> TextDocument:
        return self.text_documents[uri]

    def put(self, uri: str, text: str) -> None:
        self.text_documents[uri] = TextDocument(uri, source=text)


class FakeConnection:
    """Stands in for the pygls LanguageServer."""

    def __init__(self):
        self.workspace = FakeWorkspace()
        self.handlers: Dict[str, Any] = {}
        self.published: List[Tuple[str, List[Any]]] = []
        self.text_document_publish_diagnostics = MagicMock(side_effect=self._record)
        self.window_log_message = MagicMock()
        self.start_io = MagicMock()
        self.protocol = MagicMock()
        self.protocol.send_request_async = AsyncMock()

    def feature(self, name: str, options: Any = None):
        def decorator(f):
            self.handlers[name] = f
            return f

        return decorator

    def _record(self, params) -> None:
        self.published.append((params.uri, list(params.diagnostics)))

    def published_for(self, uri: str) -> List[List[Any]]:
        return [diagnostics for u, diagnostics in self.published if u == uri]


@pytest.fixture
def merlin() -> FakeMerlin:
    return FakeMerlin()


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def debounce_ms() -> int:
    return 20


@pytest_asyncio.fixture
async def session(connection, merlin, debounce_ms) -> Session:
    """An initialized session wired to the fakes, with a short debounce."""
    s = Session(
        connection=connection,
        merlin=merlin,
        settings={"reason": {"debounce": {"linter": debounce_ms}}},
    )
    await s.initialize()
    return s
