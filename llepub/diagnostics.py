from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Iterator, Optional

logger = logging.getLogger("llepub.diagnostics")


class DiagnosticKind(enum.Enum):
    DANGLING_REFERENCE = "dangling-reference"
    ASSET_DEGRADATION = "asset-degradation"
    MARKUP_FALLBACK = "markup-fallback"
    STYLESHEET_RENAMED = "stylesheet-renamed"
    INVALID_STYLESHEET = "invalid-stylesheet"


@dataclass(frozen=True)
class Diagnostic:
    kind: DiagnosticKind
    message: str
    subject: Optional[str] = None


class DiagnosticLog:
    """Non-fatal build conditions, in the order they were observed."""

    def __init__(self) -> None:
        self._items: list[Diagnostic] = []

    def record(self, kind: DiagnosticKind, message: str, subject: Optional[str] = None) -> Diagnostic:
        item = Diagnostic(kind=kind, message=message, subject=subject)
        self._items.append(item)
        logger.warning("%s subject=%r %s", kind.value, subject, message)
        return item

    def of_kind(self, kind: DiagnosticKind) -> list[Diagnostic]:
        return [item for item in self._items if item.kind == kind]

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)
