# File: reason_bridge/server/methods.py

"""Accessor requests answered from session state."""

import logging
from typing import TYPE_CHECKING, List, Optional

from lsprotocol.types import SymbolInformation, TextDocumentPositionParams

if TYPE_CHECKING:
    from reason_bridge.server.session import Session

logger = logging.getLogger(__name__)

GET_TEXT_METHOD = "getText"


def workspace_symbols(session: "Session", query: str) -> List[SymbolInformation]:
    """Answers `workspace/symbol` from the symbol index (substring match)."""
    if not query:
        return session.index.find_symbols({})
    return session.index.find_symbols({"name": {"$contains": query}})


async def get_prefix(session: "Session", params: TextDocumentPositionParams) -> Optional[str]:
    """Asks the editor for the identifier prefix at a position."""
    return await session.request(GET_TEXT_METHOD, params)
