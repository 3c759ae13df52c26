# File: reason_bridge/session/diagnostics.py

"""Diagnostics scheduling for the session.

Two refresh handles are kept per session. `refresh_immediate` resynchronizes
the full document text and re-queries errors on every call. `refresh_debounced`
trusts the incremental syncs already sent and coalesces bursts of calls (one
per keystroke) into a single trailing-edge query. Both publish the resulting
diagnostic set for the document, replacing whatever was published before.
"""

import collections
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from lsprotocol.types import (
    Diagnostic,
    PublishDiagnosticsParams,
    TextDocumentIdentifier,
    TextDocumentSyncKind,
)

from reason_bridge.config.loader import get_debounce_delay
from reason_bridge.merlin.protocol import Query, Sync, error_into_code
from reason_bridge.server import command
from reason_bridge.session.debounce import Debounced

if TYPE_CHECKING:
    from reason_bridge.server.session import Session

logger = logging.getLogger(__name__)

RefreshRoutine = Callable[[TextDocumentIdentifier], Awaitable[None]]


class Diagnostics:
    """Diagnostics manager for the session."""

    def __init__(self, session: "Session"):
        self.session = session
        self.refresh_immediate: Optional[RefreshRoutine] = None
        self.refresh_debounced: Optional[Debounced] = None
        # Bumped on every clear; a refresh started under an older value is stale.
        self._generations: Dict[str, int] = collections.defaultdict(int)

    async def initialize(self) -> None:
        self.on_did_change_configuration()

    def on_did_change_configuration(self) -> None:
        """Rebuilds both refresh handles from the current settings.

        A debounced refresh still waiting under the old delay is dropped.
        """
        if self.refresh_debounced is not None:
            self.refresh_debounced.cancel()
        delay = get_debounce_delay(self.session.settings)
        self.refresh_immediate = self.refresh_with_kind(TextDocumentSyncKind.Full)
        self.refresh_debounced = Debounced(
            self.refresh_with_kind(TextDocumentSyncKind.Incremental), delay
        )
        logger.debug(f"Diagnostics handles rebuilt (linter debounce {delay:.3f}s).")

    def publish(self, uri: str, diagnostics: List[Diagnostic]) -> None:
        self.session.connection.text_document_publish_diagnostics(
            PublishDiagnosticsParams(uri=uri, diagnostics=diagnostics)
        )

    def clear(self, document: TextDocumentIdentifier) -> None:
        """Publishes an empty set and voids refreshes still in flight for `document`."""
        self._generations[document.uri] += 1
        self.publish(document.uri, [])

    def cancel_pending(self, document: TextDocumentIdentifier) -> None:
        """Drops a waiting debounced refresh if it targets `document`."""
        handle = self.refresh_debounced
        if handle is None or not handle.pending:
            return
        args = handle.pending_args or ()
        if args and getattr(args[0], "uri", None) == document.uri:
            logger.debug(f"Dropping pending diagnostics refresh for {document.uri}")
            handle.cancel()

    def refresh_with_kind(self, sync_kind: TextDocumentSyncKind) -> RefreshRoutine:
        """Builds a refresh routine.

        With `TextDocumentSyncKind.Full` the routine first resends the
        document's current text, guarding against analyzer drift. It then
        queries errors; a result other than `return`, or a reply that is not a
        list, leaves the previously published diagnostics in place. Non-dict
        entries are skipped. A refresh that overlaps a `clear` of the same
        document publishes nothing.
        """

        async def refresh(document: TextDocumentIdentifier) -> None:
            uri = document.uri
            generation = self._generations[uri]
            if sync_kind == TextDocumentSyncKind.Full:
                text_document = await command.get_text_document(self.session, document)
                await self.session.merlin.sync(Sync.full(text_document.source), uri)
            errors = await self.session.merlin.query(Query.errors(), uri)
            if not errors.ok:
                logger.debug(f"Skipping diagnostics publish for {uri}: {errors.klass}")
                return
            if not isinstance(errors.value, list):
                logger.debug(f"Skipping diagnostics publish for {uri}: unexpected reply {errors.value!r}")
                return
            if self._generations[uri] != generation:
                logger.debug(f"Dropping diagnostics for {uri}: cleared while refreshing")
                return
            self.publish(uri, _diagnostics_from(errors.value, uri))

        return refresh


def _diagnostics_from(entries: List[Any], uri: str) -> List[Diagnostic]:
    diagnostics = []
    for entry in entries:
        if not isinstance(entry, dict):
            logger.debug(f"Skipping malformed error entry for {uri}: {entry!r}")
            continue
        diagnostics.append(error_into_code(entry))
    logger.debug(f"Publishing {len(diagnostics)} diagnostic(s) for {uri}")
    return diagnostics
