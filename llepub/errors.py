from __future__ import annotations

from typing import Optional


class EpubError(Exception):
    pass


class FetchError(EpubError):
    """Transport-level failure: DNS, refused connection, timeout, bad URL."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason


class ResourceFetchError(EpubError):
    def __init__(self, url: str, reason: str, status: Optional[int] = None) -> None:
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason
        self.status = status


class ConflictError(EpubError):
    def __init__(
        self,
        index: int,
        existing_hint: Optional[str],
        new_hint: Optional[str],
        message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message or f"Stylesheet index {index} already exists with path hint {existing_hint!r}, got {new_hint!r}"
        )
        self.index = index
        self.existing_hint = existing_hint
        self.new_hint = new_hint


class FrozenDocumentError(EpubError):
    def __init__(self, operation: str) -> None:
        super().__init__(f"Cannot {operation}: the document is being saved or has been saved")
        self.operation = operation
