# File: reason_bridge/server/session.py

"""Manager for an editor session.

A `Session` owns the analyzer client, the symbol index, the document
synchronizer and the diagnostics scheduler, together with the current
settings. It moves through three states:

    UNINITIALIZED --initialize()--> INITIALIZING --listen()--> READY

`initialize()` brings the components up in dependency order (analyzer client,
index, synchronizer, diagnostics); `listen()` registers the editor handlers
and starts the transport. Configuration changes rebuild only the parts that
derive from settings.
"""

import enum
import json
import logging
from typing import Any, Dict, Optional

from lsprotocol.types import (
    INITIALIZE,
    SHUTDOWN,
    WORKSPACE_DID_CHANGE_CONFIGURATION,
    WORKSPACE_SYMBOL,
    DidChangeConfigurationParams,
    InitializeParams,
    LogMessageParams,
    MessageType,
    TextDocumentSyncKind,
    WorkspaceSymbolParams,
)
from pygls.lsp.server import LanguageServer
from pygls.uris import to_fs_path

from reason_bridge.config.loader import APP_CONFIG, merge_settings
from reason_bridge.merlin.client import MerlinClient, client_from_settings
from reason_bridge.server import methods
from reason_bridge.session.diagnostics import Diagnostics
from reason_bridge.session.index import Index
from reason_bridge.session.synchronizer import Synchronizer

logger = logging.getLogger(__name__)

SERVER_NAME = "reason-bridge"
SERVER_VERSION = "0.1.0"


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class SessionStateError(RuntimeError):
    """Raised when session lifecycle steps are run out of order."""


def create_connection() -> LanguageServer:
    return LanguageServer(
        SERVER_NAME,
        SERVER_VERSION,
        text_document_sync_kind=TextDocumentSyncKind.Incremental,
    )


class Session:
    """Manager for the session. Launched on client connection.

    Attributes:
        connection: The editor transport (a pygls `LanguageServer`).
        settings (Dict[str, Any]): Current settings snapshot.
        root_path (Optional[str]): Workspace root reported by the editor.
        state (SessionState): Lifecycle state.
    """

    def __init__(
        self,
        connection: Optional[LanguageServer] = None,
        merlin: Optional[MerlinClient] = None,
        settings: Optional[Dict[str, Any]] = None,
    ):
        self.settings: Dict[str, Any] = merge_settings(APP_CONFIG, settings)
        self.connection = connection if connection is not None else create_connection()
        self.init_conf: Optional[InitializeParams] = None
        self.root_path: Optional[str] = None
        self.state = SessionState.UNINITIALIZED
        self.diagnostics = Diagnostics(self)
        self.index = Index(self)
        self.merlin = merlin if merlin is not None else client_from_settings(self.settings)
        self.synchronizer = Synchronizer(self)

    async def initialize(self) -> None:
        """Initializes the components in dependency order.

        Raises:
            SessionStateError: If the session was already initialized.
        """
        if self.state is not SessionState.UNINITIALIZED:
            raise SessionStateError(f"Cannot initialize a session in state {self.state.value}.")
        self.state = SessionState.INITIALIZING
        await self.merlin.initialize()
        await self.index.initialize()
        await self.synchronizer.initialize()
        await self.diagnostics.initialize()
        logger.info("Session initialized.")

    def register(self) -> None:
        """Registers every editor handler and moves the session to READY.

        Raises:
            SessionStateError: If `initialize()` has not been run.
        """
        if self.state is not SessionState.INITIALIZING:
            raise SessionStateError(f"Cannot listen from state {self.state.value}; initialize first.")
        connection = self.connection

        @connection.feature(INITIALIZE)
        def on_initialize(ls, params: InitializeParams) -> None:
            self.on_initialize(params)

        @connection.feature(WORKSPACE_DID_CHANGE_CONFIGURATION)
        def on_did_change_configuration(ls, params: DidChangeConfigurationParams) -> None:
            self.on_did_change_configuration(params.settings)

        @connection.feature(WORKSPACE_SYMBOL)
        def on_workspace_symbol(ls, params: WorkspaceSymbolParams):
            return methods.workspace_symbols(self, params.query)

        @connection.feature(SHUTDOWN)
        async def on_shutdown(ls, params: Any) -> None:
            await self.shutdown()

        self.synchronizer.listen()
        self.state = SessionState.READY

    def listen(self) -> None:
        """Registers handlers and runs the transport over stdio (blocking)."""
        self.register()
        logger.info("Session listening on stdio.")
        self.connection.start_io()

    def on_initialize(self, params: InitializeParams) -> None:
        self.init_conf = params
        if params.root_path:
            self.root_path = params.root_path
        elif params.root_uri:
            self.root_path = to_fs_path(params.root_uri)
        if self.root_path:
            self.merlin.cwd = self.root_path
        logger.info(f"Workspace root: {self.root_path}")
        if isinstance(params.initialization_options, dict):
            self.on_did_change_configuration(params.initialization_options)

    def on_did_change_configuration(self, settings: Any) -> None:
        """Merges new settings and rebuilds the settings-derived handles.

        The analyzer client and the symbol index are left untouched.
        """
        self.settings = merge_settings(self.settings, settings)
        self.diagnostics.on_did_change_configuration()
        self.synchronizer.on_did_change_configuration()

    async def request(self, method: str, params: Any = None) -> Any:
        """Forwards a request to the editor and returns its raw result."""
        return await self.connection.protocol.send_request_async(method, params)

    def log(self, data: Any) -> None:
        self.connection.window_log_message(
            LogMessageParams(type=MessageType.Log, message=json.dumps(data, indent=2, default=str))
        )

    async def shutdown(self) -> None:
        if self.diagnostics.refresh_debounced is not None:
            self.diagnostics.refresh_debounced.cancel()
        await self.merlin.close()
