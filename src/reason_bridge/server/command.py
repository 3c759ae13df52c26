# File: reason_bridge/server/command.py

"""Document and module lookups used by the session components.

`get_text_document` returns the editor's buffer for a document when it is
open, and otherwise reads the file from disk. `get_modules` resolves the set
of modules a document may depend on: the document itself plus every OCaml or
Reason source in the workspace, in a stable order.
"""

import asyncio
import functools
import logging
import os
import pathlib
import re
from typing import TYPE_CHECKING, List, Optional

from lsprotocol.types import TextDocumentIdentifier
from pygls.uris import from_fs_path, to_fs_path
from pygls.workspace import TextDocument

if TYPE_CHECKING:
    from reason_bridge.server.session import Session

logger = logging.getLogger(__name__)

SOURCE_PATTERN = re.compile(r"\.(ml|mli|re|rei)$")
INTERFACE_PATTERN = re.compile(r"\.(ml|re)i$")
SKIPPED_DIRECTORIES = frozenset({"_build", "_esy", "_opam", "node_modules"})


def is_interface(uri: str) -> bool:
    """True for interface-only modules (`.mli`, `.rei`)."""
    return bool(INTERFACE_PATTERN.search(uri))


def _read_text_sync(path: str) -> str:
    """Reads a source file (run in an executor)."""
    with open(path, encoding="utf-8", errors="replace") as f:
        return f.read()


async def get_text_document(session: "Session", id: TextDocumentIdentifier) -> TextDocument:
    """Returns the current text of a document.

    Open documents come from the editor's workspace, which already reflects
    every change notification. Other documents are read from disk.
    """
    workspace = session.connection.workspace
    if id.uri in workspace.text_documents:
        return workspace.get_text_document(id.uri)

    path = to_fs_path(id.uri)
    if path is None:
        logger.warning(f"Cannot map {id.uri} to a filesystem path; treating as empty.")
        return TextDocument(id.uri, source="")
    loop = asyncio.get_running_loop()
    try:
        text = await loop.run_in_executor(None, functools.partial(_read_text_sync, path))
    except OSError as e:
        logger.warning(f"Failed to read {path}: {e}")
        text = ""
    return TextDocument(id.uri, source=text)


def _walk_sources(root: pathlib.Path) -> List[pathlib.Path]:
    found: List[pathlib.Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(".") and d not in SKIPPED_DIRECTORIES
        )
        for filename in sorted(filenames):
            if SOURCE_PATTERN.search(filename):
                found.append(pathlib.Path(dirpath) / filename)
    return found


async def get_modules(session: "Session", origin: TextDocumentIdentifier) -> List[TextDocumentIdentifier]:
    """Returns the modules reachable from `origin`, origin first.

    The workspace root is taken from the session; without one only the origin
    is returned. Remaining modules follow a sorted top-down walk of the root
    (files of a directory before its subdirectories).
    """
    modules = [TextDocumentIdentifier(uri=origin.uri)]
    root: Optional[str] = session.root_path
    if not root or not os.path.isdir(root):
        logger.debug("No workspace root; module set is the origin only.")
        return modules

    loop = asyncio.get_running_loop()
    paths = await loop.run_in_executor(None, functools.partial(_walk_sources, pathlib.Path(root)))
    origin_path = to_fs_path(origin.uri)
    for path in paths:
        if origin_path and os.path.abspath(str(path)) == os.path.abspath(origin_path):
            continue
        modules.append(TextDocumentIdentifier(uri=from_fs_path(str(path))))
    logger.debug(f"Resolved {len(modules)} module(s) from {origin.uri}")
    return modules
