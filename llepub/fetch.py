from __future__ import annotations

import asyncio
import re
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .errors import FetchError
from .settings import Settings

HTTP_URL_RE = re.compile(r"^https?://", flags=re.IGNORECASE)


@dataclass
class FetchResponse:
    url: str
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return (self.headers.get("content-type") or "").strip().lower()

    def text(self) -> str:
        match = re.search(r"charset=([\w.\-]+)", self.content_type)
        charset = match.group(1) if match else "utf-8"
        try:
            return self.body.decode(charset, errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")


Fetcher = Callable[[str], Awaitable[FetchResponse]]


def is_remote_url(value: object) -> bool:
    return isinstance(value, str) and bool(HTTP_URL_RE.match(value.strip()))


def _lower_headers(items: object) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in getattr(items, "items", lambda: [])():
        headers[str(name).lower()] = str(value)
    return headers


class UrllibFetcher:
    """Blocking urllib request run on a worker thread."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()

    def fetch_sync(self, url: str) -> FetchResponse:
        request_obj = urllib.request.Request(
            url,
            headers={
                "User-Agent": self.settings.user_agent,
                "Accept": "*/*",
            },
        )
        try:
            with urllib.request.urlopen(request_obj, timeout=self.settings.fetch_timeout) as response:
                return FetchResponse(
                    url=url,
                    status=int(getattr(response, "status", 200) or 200),
                    headers=_lower_headers(response.headers),
                    body=response.read(),
                )
        except urllib.error.HTTPError as exc:
            # Non-2xx answers are still responses; callers decide what they mean.
            try:
                body = exc.read()
            except OSError:
                body = b""
            return FetchResponse(url=url, status=exc.code, headers=_lower_headers(exc.headers), body=body)
        except urllib.error.URLError as exc:
            raise FetchError(url, str(exc.reason)) from exc
        except (OSError, ValueError) as exc:
            raise FetchError(url, str(exc)) from exc

    async def __call__(self, url: str) -> FetchResponse:
        return await asyncio.to_thread(self.fetch_sync, url)
