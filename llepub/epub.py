from __future__ import annotations

import asyncio
import datetime as dt
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from .assets import AssetPipeline
from .content import ContentModel
from .diagnostics import Diagnostic, DiagnosticLog
from .errors import FrozenDocumentError
from .fetch import Fetcher, UrllibFetcher
from .markup import LxmlNormalizer, MarkupNormalizer
from .metadata import MetadataStore, format_timestamp, new_identifier, utc_now
from .models import (
    Chapter,
    CoverImage,
    MetadataEntry,
    StylesheetEntry,
    Volume,
    VolumeOptions,
    content_kind_from_value,
    title_mode_from_value,
    volume_options_from_dict,
)
from .render import render_package
from .settings import Settings, load_settings
from .styles import StylesheetRegistry
from .writer import PackageEntry, PackageWriter

logger = logging.getLogger("llepub.epub")


class EpubSaver:
    """Collects a book in memory and writes it as one EPUB 3 archive.

    Registration calls may come in any order; volumes, chapters and indexed
    stylesheets are rendered by ascending index. Coroutine mutators share one
    lock, so concurrent add_chapter calls are applied one at a time in the
    order they acquire it. Once save() starts the document is frozen and
    every mutator raises FrozenDocumentError.
    """

    def __init__(
        self,
        *,
        fetcher: Optional[Fetcher] = None,
        normalizer: Optional[MarkupNormalizer] = None,
        settings: Optional[Settings] = None,
        identifier_factory: Callable[[], str] = new_identifier,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.settings = settings or load_settings()
        self._fetcher = fetcher or UrllibFetcher(self.settings)
        self._normalizer = normalizer or LxmlNormalizer()
        self._clock = clock
        self._diagnostics = DiagnosticLog()
        self.metadata = MetadataStore(identifier_factory=identifier_factory, clock=clock)
        self.styles = StylesheetRegistry(self._fetcher, self._normalizer, self._diagnostics)
        self.assets = AssetPipeline(self._fetcher, self._normalizer, self._diagnostics)
        self.content = ContentModel()
        self._frozen = False
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def diagnostics(self) -> list[Diagnostic]:
        return list(self._diagnostics)

    def _document_lock(self) -> asyncio.Lock:
        # asyncio.Lock binds to the loop it first waits on; each asyncio.run gets its own.
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def _ensure_mutable(self, operation: str) -> None:
        if self._frozen:
            raise FrozenDocumentError(operation)

    def set_info(self, key: str, value: object, attributes: Optional[dict[str, str]] = None) -> MetadataEntry:
        self._ensure_mutable("set metadata")
        return self.metadata.set_info(key, value, attributes)

    def set_i18n(self, language: str, translations: dict[str, str]) -> None:
        self._ensure_mutable("set translations")
        self.metadata.set_i18n(language, translations)

    def translate(self, key: str) -> str:
        return self.metadata.translate(key)

    async def set_cover(self, source: Union[str, bytes, bytearray], extension: Optional[str] = None) -> CoverImage:
        self._ensure_mutable("set the cover")
        async with self._document_lock():
            self._ensure_mutable("set the cover")
            return await self.assets.set_cover(source, extension)

    def add_volume(
        self,
        index: int,
        title: str,
        options: Union[VolumeOptions, Mapping[str, Any], None] = None,
    ) -> Volume:
        self._ensure_mutable("add a volume")
        if not isinstance(options, VolumeOptions):
            options = volume_options_from_dict(dict(options or {}))
        return self.content.add_volume(int(index), title, options)

    def add_stylesheet(self, index: int, content: str, path_hint: Optional[str] = None) -> StylesheetEntry:
        self._ensure_mutable("add a stylesheet")
        return self.styles.add_stylesheet(int(index), content, path_hint)

    add_css = add_stylesheet

    async def import_stylesheet_map(
        self,
        entries: Union[Mapping[str, Union[str, bytes]], Iterable[tuple[str, Union[str, bytes]]]],
    ) -> dict[str, str]:
        self._ensure_mutable("import stylesheets")
        async with self._document_lock():
            self._ensure_mutable("import stylesheets")
            return await self.styles.import_map(entries)

    add_css_map = import_stylesheet_map

    async def add_chapter(
        self,
        volume_index: int,
        chapter_index: int,
        title: str,
        content: str,
        kind: Any = "text",
        use_global_css: bool = False,
        css_indices: Iterable[int] = (),
        title_mode: Any = None,
    ) -> Chapter:
        self._ensure_mutable("add a chapter")
        content_kind = content_kind_from_value(kind)
        mode = title_mode_from_value(title_mode)
        async with self._document_lock():
            self._ensure_mutable("add a chapter")
            # Fail on an unknown volume before any image is fetched.
            self.content.get_volume(int(volume_index))
            body = content or ""
            if content_kind.is_markup:
                body = self.styles.rewrite_references(body)
                body = await self.assets.extract_images(body)
            chapter = self.content.add_chapter(
                int(volume_index),
                int(chapter_index),
                title,
                body,
                kind=content_kind,
                use_global_css=bool(use_global_css),
                css_indices=css_indices or (),
                title_mode=mode,
            )
        logger.debug("chapter added volume=%s chapter=%s kind=%s", volume_index, chapter_index, content_kind.value)
        return chapter

    def render_entries(self, moment: Optional[dt.datetime] = None) -> list[PackageEntry]:
        return render_package(
            self.metadata,
            self.styles,
            self.assets,
            self.content,
            normalizer=self._normalizer,
            diagnostics=self._diagnostics,
            modified=format_timestamp(moment or self._clock()),
        )

    async def save(self, output_path: Union[str, Path, None] = None) -> bytes:
        self._frozen = True
        async with self._document_lock():
            moment = self._clock()
            entries = self.render_entries(moment)
            writer = PackageWriter(self.settings.compression_level, timestamp=moment)
            if output_path is None:
                payload = writer.write(entries)
            else:
                payload = await asyncio.to_thread(writer.write_to, entries, Path(output_path))
        logger.info(
            "epub saved title=%r bytes=%d diagnostics=%d path=%s",
            self.metadata.title,
            len(payload),
            len(self._diagnostics),
            output_path or "-",
        )
        return payload
