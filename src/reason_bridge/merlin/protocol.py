# File: reason_bridge/merlin/protocol.py

"""Request builders and result conversions for the merlin analyzer protocol.

Merlin speaks a JSON protocol in which each command is a JSON array (for
example `["tell", "start", "end", text]` or `["errors"]`) wrapped in a
context object naming the document, and each reply is an object tagged by
its `class` field (`return`, `failure`, `error` or `exception`).

This module contains the pure parts of that protocol: building requests,
parsing tagged replies, and converting analyzer positions, errors and
outline trees into their `lsprotocol` counterparts.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from lsprotocol.types import (
    Diagnostic,
    DiagnosticSeverity,
    Location,
    Position,
    Range,
    SymbolInformation,
    SymbolKind,
)

logger = logging.getLogger(__name__)

# --- Result classes ---
RETURN = "return"
FAILURE = "failure"
ERROR = "error"
EXCEPTION = "exception"
RESPONSE_CLASSES = (RETURN, FAILURE, ERROR, EXCEPTION)

# Sentinel positions understood by `tell`
START = "start"
END = "end"

DIAGNOSTIC_SOURCE = "merlin"

MerlinPosition = Union[str, Dict[str, int]]

OUTLINE_KINDS: Dict[str, SymbolKind] = {
    "Class": SymbolKind.Class,
    "ClassType": SymbolKind.Interface,
    "Constructor": SymbolKind.Constructor,
    "Exn": SymbolKind.Constructor,
    "Label": SymbolKind.Field,
    "Method": SymbolKind.Method,
    "Modtype": SymbolKind.Interface,
    "Module": SymbolKind.Module,
    "Signature": SymbolKind.Interface,
    "Type": SymbolKind.Class,
    "Value": SymbolKind.Variable,
}


@dataclass(frozen=True)
class MerlinResponse:
    """A tagged analyzer reply.

    Attributes:
        klass (str): One of `return`, `failure`, `error` or `exception`.
        value (Any): The payload on `return`; a description otherwise.
    """

    klass: str
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.klass == RETURN

    @classmethod
    def from_payload(cls, payload: Any) -> "MerlinResponse":
        """Parses a decoded JSON reply. Malformed replies become `exception`."""
        if not isinstance(payload, dict):
            return cls(EXCEPTION, f"Malformed analyzer reply: {payload!r}")
        klass = payload.get("class")
        if klass not in RESPONSE_CLASSES:
            return cls(EXCEPTION, f"Unknown analyzer reply class: {klass!r}")
        return cls(klass, payload.get("value"))

    @classmethod
    def exception(cls, description: str) -> "MerlinResponse":
        return cls(EXCEPTION, description)


class Sync:
    """Builders for state-changing analyzer commands."""

    @staticmethod
    def tell(start: MerlinPosition, end: MerlinPosition, text: str) -> List[Any]:
        """Replaces the text between `start` and `end` with `text`."""
        return ["tell", start, end, text]

    @staticmethod
    def full(text: str) -> List[Any]:
        """Replaces the whole document."""
        return Sync.tell(START, END, text)


class Query:
    """Builders for read-only analyzer commands."""

    @staticmethod
    def errors() -> List[Any]:
        return ["errors"]

    @staticmethod
    def outline() -> List[Any]:
        return ["outline"]


def position_from_code(position: Position) -> Dict[str, int]:
    """Converts a zero-based editor position to a one-based analyzer one."""
    return {"line": position.line + 1, "col": position.character}


def position_into_code(position: Optional[Dict[str, Any]]) -> Position:
    """Converts an analyzer position to a zero-based editor position.

    Missing or malformed positions map to the start of the document.
    """
    if not isinstance(position, dict):
        return Position(line=0, character=0)
    line = position.get("line", 1)
    col = position.get("col", 0)
    if not isinstance(line, int) or not isinstance(col, int):
        return Position(line=0, character=0)
    return Position(line=max(line - 1, 0), character=max(col, 0))


def range_into_code(entry: Dict[str, Any]) -> Range:
    return Range(
        start=position_into_code(entry.get("start")),
        end=position_into_code(entry.get("end")),
    )


def error_into_code(entry: Dict[str, Any]) -> Diagnostic:
    """Maps one analyzer error report to an editor diagnostic.

    Sub-messages, when present, are appended to the main message on their
    own lines.
    """
    severity = (
        DiagnosticSeverity.Warning
        if entry.get("type") == "warning"
        else DiagnosticSeverity.Error
    )
    message = str(entry.get("message", "")).strip()
    subs = entry.get("sub")
    for sub in subs if isinstance(subs, list) else []:
        if isinstance(sub, dict) and sub.get("message"):
            message = f"{message}\n{str(sub['message']).strip()}"
    return Diagnostic(
        range=range_into_code(entry),
        severity=severity,
        message=message,
        source=DIAGNOSTIC_SOURCE,
    )


def outline_into_code(
    items: List[Dict[str, Any]], uri: str, container_name: Optional[str] = None
) -> List[SymbolInformation]:
    """Flattens an analyzer outline tree into symbol records.

    Each record's `container_name` is the name of the item it is nested in,
    or None for top-level items. Children follow their parent.
    """
    symbols: List[SymbolInformation] = []
    for item in items or []:
        if not isinstance(item, dict) or not item.get("name"):
            logger.debug(f"Skipping malformed outline item in {uri}: {item!r}")
            continue
        name = item["name"]
        symbols.append(
            SymbolInformation(
                name=name,
                kind=OUTLINE_KINDS.get(item.get("kind"), SymbolKind.Variable),
                location=Location(uri=uri, range=range_into_code(item)),
                container_name=container_name,
            )
        )
        symbols.extend(outline_into_code(item.get("children") or [], uri, name))
    return symbols
