# File: reason_bridge/session/synchronizer.py

"""Document synchronizer for the session.

Translates editor lifecycle notifications into analyzer `tell` commands and
triggers diagnostics and index refreshes:

- open: full-text sync, immediate diagnostics, workspace population.
- change: one ranged sync per content change, in delivery order, then a
  debounced diagnostics refresh.
- save: immediate diagnostics.
- close: clear diagnostics once in-flight work on the document is done.

Notifications for the same document are handled one at a time, in the order
the editor delivered them, because ranged syncs depend on the offsets left by
the previous ones. Different documents do not wait on each other.
"""

import asyncio
import collections
import logging
from typing import TYPE_CHECKING, Any, DefaultDict, Sequence

from lsprotocol.types import (
    TEXT_DOCUMENT_DID_CHANGE,
    TEXT_DOCUMENT_DID_CLOSE,
    TEXT_DOCUMENT_DID_OPEN,
    TEXT_DOCUMENT_DID_SAVE,
    DidChangeTextDocumentParams,
    DidCloseTextDocumentParams,
    DidOpenTextDocumentParams,
    DidSaveTextDocumentParams,
    TextDocumentIdentifier,
)

from reason_bridge.merlin.protocol import Sync, position_from_code

if TYPE_CHECKING:
    from reason_bridge.server.session import Session

logger = logging.getLogger(__name__)


class Synchronizer:
    """Document synchronizer for the session."""

    def __init__(self, session: "Session"):
        self.session = session
        self._locks: DefaultDict[str, asyncio.Lock] = collections.defaultdict(asyncio.Lock)

    async def initialize(self) -> None:
        return

    def on_did_change_configuration(self) -> None:
        return

    def lock_for(self, uri: str) -> asyncio.Lock:
        """Returns the lock serializing analyzer work on `uri`."""
        return self._locks[uri]

    def listen(self) -> None:
        """Registers the lifecycle handlers on the editor connection."""
        connection = self.session.connection

        @connection.feature(TEXT_DOCUMENT_DID_OPEN)
        async def did_open(ls, params: DidOpenTextDocumentParams) -> None:
            await self.on_open(params.text_document)

        @connection.feature(TEXT_DOCUMENT_DID_CHANGE)
        async def did_change(ls, params: DidChangeTextDocumentParams) -> None:
            await self.on_change(params.text_document, params.content_changes)

        @connection.feature(TEXT_DOCUMENT_DID_SAVE)
        async def did_save(ls, params: DidSaveTextDocumentParams) -> None:
            await self.on_save(params.text_document)

        @connection.feature(TEXT_DOCUMENT_DID_CLOSE)
        async def did_close(ls, params: DidCloseTextDocumentParams) -> None:
            await self.on_close(params.text_document)

    async def on_open(self, document: Any) -> None:
        """Handles an opened document (`document` carries `uri` and `text`)."""
        uri = document.uri
        identifier = TextDocumentIdentifier(uri=uri)
        async with self._locks[uri]:
            logger.debug(f"Opened {uri}")
            await self.session.merlin.sync(Sync.full(document.text), uri)
            await self.session.diagnostics.refresh_immediate(identifier)
        await self.session.index.populate(identifier)

    async def on_change(self, document: Any, changes: Sequence[Any]) -> None:
        uri = document.uri
        async with self._locks[uri]:
            for change in changes:
                change_range = getattr(change, "range", None)
                if change is None or change_range is None:
                    logger.debug(f"Skipping change without a range for {uri}")
                    continue
                request = Sync.tell(
                    position_from_code(change_range.start),
                    position_from_code(change_range.end),
                    change.text,
                )
                await self.session.merlin.sync(request, uri)
            self.session.diagnostics.refresh_debounced(TextDocumentIdentifier(uri=uri))

    async def on_save(self, document: Any) -> None:
        uri = document.uri
        async with self._locks[uri]:
            await self.session.diagnostics.refresh_immediate(TextDocumentIdentifier(uri=uri))

    async def on_close(self, document: Any) -> None:
        uri = document.uri
        identifier = TextDocumentIdentifier(uri=uri)
        async with self._locks[uri]:
            self.session.diagnostics.cancel_pending(identifier)
            self.session.diagnostics.clear(identifier)
        lock = self._locks.get(uri)
        if lock is not None and not lock.locked():
            del self._locks[uri]
