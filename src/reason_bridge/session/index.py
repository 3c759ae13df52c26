# File: reason_bridge/session/index.py

"""In-memory index of symbol definitions built from analyzer outlines.

The index holds `SymbolInformation` records for every document it has seen.
Records are never edited in place: a document is refreshed by removing all of
its records and inserting the ones from a fresh outline query. Workspace-wide
population walks the origin document's modules once per session.

Queries use a small Loki-style dictionary language:

    {"name": "foo"}                          equality
    {"name": {"$regex": "^Foo\\."}}          regular expression search
    {"name": {"$contains": "map"}}           substring
    {"name": {"$startswith": "List."}}       prefix
    {"location.uri": "file:///a.re"}         dotted keys reach nested fields

Several keys in one query must all match. A plain callable taking a record
and returning a bool is accepted as well.
"""

import logging
import os
import re
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

from lsprotocol.types import SymbolInformation, TextDocumentIdentifier
from pygls.uris import to_fs_path

from reason_bridge.merlin.protocol import Query, Sync, outline_into_code
from reason_bridge.server import command

if TYPE_CHECKING:
    from reason_bridge.server.session import Session

logger = logging.getLogger(__name__)

NAME_SEPARATOR = "."

SymbolQuery = Union[Dict[str, Any], Callable[[SymbolInformation], bool]]


class IndexingError(Exception):
    """Signals that an outline query returned no usable data.

    Returned (not raised) by `Index.index_symbols`.

    Attributes:
        uri (str): The document whose outline could not be indexed.
        klass (str): The analyzer result class received.
    """

    def __init__(self, uri: str, klass: str):
        self.uri = uri
        self.klass = klass
        super().__init__(f"index_symbols: failed for {uri} ({klass})")


def _resolve_field(record: Any, dotted: str) -> Any:
    value = record
    for part in dotted.split("."):
        value = getattr(value, part)
    return value


def _match_condition(value: Any, condition: Any) -> bool:
    if not isinstance(condition, dict):
        return value == condition
    for operator, operand in condition.items():
        if operator == "$eq":
            ok = value == operand
        elif operator == "$ne":
            ok = value != operand
        elif operator == "$regex":
            ok = re.search(operand, value) is not None
        elif operator == "$contains":
            ok = operand in value
        elif operator == "$startswith":
            ok = value.startswith(operand)
        elif operator == "$in":
            ok = value in operand
        else:
            raise ValueError(f"Unsupported query operator: {operator}")
        if not ok:
            return False
    return True


def compile_query(query: SymbolQuery) -> Callable[[SymbolInformation], bool]:
    """Turns a query dictionary (or callable) into a record predicate."""
    if callable(query):
        return query
    if not isinstance(query, dict):
        raise TypeError(f"Unsupported symbol query: {query!r}")

    def predicate(record: SymbolInformation) -> bool:
        return all(
            _match_condition(_resolve_field(record, key), condition)
            for key, condition in query.items()
        )

    return predicate


class Index:
    """Index for outline metadata.

    Attributes:
        populated (bool): Set once workspace population has started; never
            reset for the lifetime of the session.
    """

    def __init__(self, session: "Session"):
        self.session = session
        self.populated = False
        self._symbols: List[SymbolInformation] = []

    async def initialize(self) -> None:
        return

    def __len__(self) -> int:
        return len(self._symbols)

    def find_symbols(self, query: SymbolQuery) -> List[SymbolInformation]:
        """Returns every record matching `query`, sorted by name.

        Any failure while evaluating the query (bad regex, unknown field or
        operator) yields an empty list.
        """
        try:
            predicate = compile_query(query)
            matches = [record for record in self._symbols if predicate(record)]
        except Exception as e:
            logger.debug(f"Symbol query {query!r} failed: {e}")
            return []
        return sorted(matches, key=lambda record: record.name)

    def _container_for(self, uri: str) -> str:
        path = to_fs_path(uri) or uri
        root = self.session.root_path
        if not root:
            return path
        return os.path.relpath(path, root)

    async def index_symbols(self, document: TextDocumentIdentifier) -> Optional[IndexingError]:
        """Queries the outline of `document` and inserts its symbols.

        Returns:
            None on success, or an `IndexingError` when the analyzer did not
            return an outline (nothing is inserted in that case).
        """
        uri = document.uri
        response = await self.session.merlin.query(Query.outline(), uri)
        if not response.ok:
            return IndexingError(uri, response.klass)
        container = self._container_for(uri)
        items = outline_into_code(response.value or [], uri)
        for item in items:
            prefix = f"{item.container_name}{NAME_SEPARATOR}" if item.container_name else ""
            self._symbols.append(
                SymbolInformation(
                    name=f"{prefix}{item.name}",
                    kind=item.kind,
                    location=item.location,
                    container_name=container,
                )
            )
        logger.debug(f"Indexed {len(items)} symbol(s) from {uri}")
        return None

    def remove_symbols(self, document: TextDocumentIdentifier) -> None:
        self._symbols = [
            record for record in self._symbols if record.location.uri != document.uri
        ]

    async def refresh_symbols(self, document: TextDocumentIdentifier) -> Optional[IndexingError]:
        self.remove_symbols(document)
        return await self.index_symbols(document)

    async def populate(self, origin: TextDocumentIdentifier) -> None:
        """Indexes every module reachable from `origin`, once per session.

        The flag is set before the first await so that overlapping open
        notifications cannot start a second walk. Interface-only modules are
        skipped. Modules are processed one at a time, each under its document
        lock so a full sync never lands between the ranged syncs of a change.
        """
        if self.populated:
            return
        self.populated = True
        modules = await command.get_modules(self.session, origin)
        logger.info(f"Populating symbol index from {len(modules)} module(s).")
        for module in modules:
            if command.is_interface(module.uri):
                continue
            async with self.session.synchronizer.lock_for(module.uri):
                document = await command.get_text_document(self.session, module)
                await self.session.merlin.sync(Sync.full(document.source), module.uri)
                failure = await self.refresh_symbols(module)
            if failure is not None:
                logger.debug(str(failure))
        logger.info(f"Symbol index populated with {len(self._symbols)} record(s).")
