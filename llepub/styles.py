from __future__ import annotations

import logging
import posixpath
import re
from typing import Iterable, Mapping, Optional, Union

from .diagnostics import DiagnosticKind, DiagnosticLog
from .errors import ConflictError, FetchError, ResourceFetchError
from .fetch import Fetcher, is_remote_url
from .markup import MarkupNormalizer, MarkupParseError, dump_markup, drop_element, iter_by_local_name, load_markup
from .models import StylesheetEntry

logger = logging.getLogger("llepub.styles")

STYLES_PREFIX = "Styles/"
INDEXED_NAME_RE = re.compile(r"^style\d+\.css$")
RENAMED_INDEX_START = 1000


def indexed_stylesheet_name(index: int) -> str:
    return f"style{index}.css"


def stylesheet_href(name: str) -> str:
    """Href of a packaged stylesheet as seen from a document under Text/."""
    return f"../{STYLES_PREFIX}{name}"


def css_problem(raw: str) -> Optional[str]:
    depth = 0
    quote: Optional[str] = None
    pos = 0
    length = len(raw)
    while pos < length:
        ch = raw[pos]
        if quote:
            if ch == "\\":
                pos += 2
                continue
            if ch == quote:
                quote = None
            pos += 1
            continue
        if ch in ("'", '"'):
            quote = ch
        elif raw.startswith("/*", pos):
            end = raw.find("*/", pos + 2)
            if end == -1:
                return "unterminated comment"
            pos = end + 2
            continue
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth < 0:
                return "unbalanced braces"
        pos += 1
    if quote:
        return "unterminated string"
    if depth != 0:
        return "unbalanced braces"
    return None


def _is_stylesheet_link(node: object) -> bool:
    rel = str(node.get("rel") or "").lower().split()  # type: ignore[attr-defined]
    link_type = str(node.get("type") or "").strip().lower()  # type: ignore[attr-defined]
    return "stylesheet" in rel or link_type == "text/css"


def _safe_style_path(path: str) -> str:
    normalized = posixpath.normpath((path or "").replace("\\", "/")).lstrip("/")
    while normalized.startswith("../"):
        normalized = normalized[3:]
    return "" if normalized in {"", ".", ".."} else normalized


class StylesheetRegistry:
    def __init__(self, fetcher: Fetcher, normalizer: MarkupNormalizer, diagnostics: DiagnosticLog) -> None:
        self._fetcher = fetcher
        self._normalizer = normalizer
        self._diagnostics = diagnostics
        self._indexed: dict[int, StylesheetEntry] = {}
        # final path under Styles/ -> CSS text, in import order
        self._mapped: dict[str, str] = {}
        # reference path found in chapter markup -> href of the packaged file
        self._references: dict[str, str] = {}

    def add_stylesheet(self, index: int, content: str, path_hint: Optional[str] = None) -> StylesheetEntry:
        existing = self._indexed.get(index)
        if existing is not None and path_hint and existing.path_hint != path_hint:
            raise ConflictError(index, existing.path_hint, path_hint)
        name = indexed_stylesheet_name(index)
        if name in self._mapped:
            # Chapters may already link the mapped file under this name.
            source = next(
                (ref for ref, href in self._references.items() if href == stylesheet_href(name)),
                name,
            )
            raise ConflictError(
                index,
                source,
                path_hint,
                message=f"Stylesheet index {index} would overwrite {name}, already taken by mapped stylesheet {source!r}",
            )

        hint = path_hint or (existing.path_hint if existing else None)
        entry = StylesheetEntry(index=index, content=content or "", path_hint=hint)
        self._indexed[index] = entry
        if hint:
            self._references[hint] = stylesheet_href(indexed_stylesheet_name(index))
        self._check_css(entry.content, indexed_stylesheet_name(index))
        return entry

    def has_index(self, index: int) -> bool:
        return index in self._indexed

    def sorted_stylesheets(self) -> list[StylesheetEntry]:
        return [self._indexed[idx] for idx in sorted(self._indexed)]

    def mapped_stylesheets(self) -> list[tuple[str, str]]:
        return list(self._mapped.items())

    @property
    def references(self) -> dict[str, str]:
        return dict(self._references)

    def _next_free_name(self) -> str:
        counter = RENAMED_INDEX_START
        while counter in self._indexed or indexed_stylesheet_name(counter) in self._mapped:
            counter += 1
        return indexed_stylesheet_name(counter)

    async def _load_source(self, source: Union[str, bytes]) -> str:
        if isinstance(source, bytes):
            return source.decode("utf-8", errors="replace")
        if not is_remote_url(source):
            return source or ""
        url = source.strip()
        try:
            response = await self._fetcher(url)
        except FetchError as exc:
            raise ResourceFetchError(url, exc.reason) from exc
        if not response.ok:
            raise ResourceFetchError(url, f"HTTP {response.status}", status=response.status)
        return response.text()

    async def import_map(
        self, entries: Union[Mapping[str, Union[str, bytes]], Iterable[tuple[str, Union[str, bytes]]]]
    ) -> dict[str, str]:
        items = entries.items() if isinstance(entries, Mapping) else entries
        imported: dict[str, str] = {}
        for original_path, source in items:
            normalized = original_path[len(STYLES_PREFIX):] if original_path.startswith(STYLES_PREFIX) else original_path
            final_path = _safe_style_path(normalized)
            if not final_path:
                raise ValueError(f"Invalid stylesheet path: {original_path!r}")
            if INDEXED_NAME_RE.match(final_path):
                renamed = self._next_free_name()
                self._diagnostics.record(
                    DiagnosticKind.STYLESHEET_RENAMED,
                    f"renamed {final_path} to {renamed} to avoid indexed stylesheet names",
                    subject=original_path,
                )
                final_path = renamed

            content = await self._load_source(source)
            self._mapped[final_path] = content
            self._references[original_path] = stylesheet_href(final_path)
            self._check_css(content, final_path)
            imported[original_path] = self._references[original_path]
        return imported

    def rewrite_references(self, markup: str) -> str:
        try:
            document = load_markup(self._normalizer, markup)
        except MarkupParseError:
            logger.warning("stylesheet references left untouched: markup could not be parsed")
            return markup
        packaged = set(self._references.values())
        packaged.update(stylesheet_href(indexed_stylesheet_name(index)) for index in self._indexed)
        packaged.update(stylesheet_href(path) for path in self._mapped)
        for link in list(iter_by_local_name(document.root, "link")):
            if not _is_stylesheet_link(link):
                continue
            href = str(link.get("href") or "")
            if not href:
                continue
            target = self._references.get(href)
            if target is None and href in packaged:
                # Already points at a packaged stylesheet.
                continue
            if target is not None:
                if target != href:
                    logger.debug("stylesheet reference %s -> %s", href, target)
                link.set("href", target)
                continue
            self._diagnostics.record(
                DiagnosticKind.DANGLING_REFERENCE,
                "stylesheet link has no registered stylesheet and was removed",
                subject=href,
            )
            drop_element(link)
        return dump_markup(self._normalizer, document)

    def _check_css(self, content: str, name: str) -> None:
        problem = css_problem(content)
        if problem:
            self._diagnostics.record(
                DiagnosticKind.INVALID_STYLESHEET,
                f"stylesheet packaged as-is despite {problem}",
                subject=name,
            )
