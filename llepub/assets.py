from __future__ import annotations

import logging
import urllib.parse
from pathlib import PurePosixPath
from typing import Optional, Union

from .diagnostics import DiagnosticKind, DiagnosticLog
from .errors import FetchError, ResourceFetchError
from .fetch import Fetcher, FetchResponse, is_remote_url
from .markup import MarkupNormalizer, MarkupParseError, dump_markup, drop_element, iter_by_local_name, load_markup
from .models import CoverImage, ImageAsset

logger = logging.getLogger("llepub.assets")

IMAGES_PREFIX = "Images/"
DEFAULT_IMAGE_EXTENSION = "jpg"
COVER_EXTENSIONS = ("jpg", "jpeg", "png", "gif")
IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp", "svg")
_CONTENT_TYPE_EXTENSIONS = (
    ("jpeg", "jpg"),
    ("jpg", "jpg"),
    ("png", "png"),
    ("gif", "gif"),
    ("webp", "webp"),
    ("svg", "svg"),
)


def guess_image_media_type(extension: str) -> str:
    return {
        "jpg": "image/jpeg",
        "jpeg": "image/jpeg",
        "png": "image/png",
        "gif": "image/gif",
        "webp": "image/webp",
        "svg": "image/svg+xml",
    }.get((extension or "").lower(), "image/jpeg")


def image_href(filename: str) -> str:
    """Href of a packaged image as seen from a document under Text/."""
    return f"../{IMAGES_PREFIX}{filename}"


def infer_extension(content_type: str, url: str, allowed: tuple[str, ...]) -> str:
    content_type = (content_type or "").lower()
    if content_type:
        for marker, extension in _CONTENT_TYPE_EXTENSIONS:
            if marker in content_type and extension in allowed:
                return extension
    suffix = PurePosixPath(urllib.parse.urlsplit(url or "").path).suffix.lower().lstrip(".")
    if suffix in allowed:
        return suffix
    return DEFAULT_IMAGE_EXTENSION


class AssetPipeline:
    """Cover image and downloaded chapter images.

    Not safe for concurrent writers: callers must serialize set_cover and
    extract_images (EpubSaver does so with its document lock). The image
    counter is shared by every chapter of the document and never reused;
    an image URL seen before reuses its packaged file without a fetch.
    """

    def __init__(self, fetcher: Fetcher, normalizer: MarkupNormalizer, diagnostics: DiagnosticLog) -> None:
        self._fetcher = fetcher
        self._normalizer = normalizer
        self._diagnostics = diagnostics
        self.cover: Optional[CoverImage] = None
        self.images: dict[str, ImageAsset] = {}
        self._by_source: dict[str, ImageAsset] = {}
        self._counter = 0

    @property
    def next_image_number(self) -> int:
        return self._counter

    async def set_cover(self, source: Union[str, bytes, bytearray], extension: Optional[str] = None) -> CoverImage:
        if isinstance(source, (bytes, bytearray)):
            ext = (extension or DEFAULT_IMAGE_EXTENSION).lower().lstrip(".")
            self.cover = CoverImage(content=bytes(source), extension=ext)
            return self.cover

        url = str(source or "").strip()
        if not is_remote_url(url):
            raise ValueError(f"Cover source must be an http(s) URL or bytes: {source!r}")
        try:
            response = await self._fetcher(url)
        except FetchError as exc:
            raise ResourceFetchError(url, exc.reason) from exc
        if not response.ok:
            raise ResourceFetchError(url, f"HTTP {response.status}", status=response.status)
        ext = infer_extension(response.content_type, url, COVER_EXTENSIONS)
        self.cover = CoverImage(content=response.body, extension=ext)
        logger.info("cover downloaded url=%s bytes=%d ext=%s", url, len(response.body), ext)
        return self.cover

    async def _try_fetch(self, url: str) -> Optional[FetchResponse]:
        try:
            response = await self._fetcher(url)
        except FetchError as exc:
            logger.info("image fetch failed url=%s reason=%s", url, exc.reason)
            return None
        if not response.ok:
            logger.info("image fetch failed url=%s status=%s", url, response.status)
            return None
        return response

    async def _download(self, src: str) -> Optional[FetchResponse]:
        if src.lower().startswith("http://"):
            # Single https attempt to avoid mixed content; not a retry.
            upgraded = await self._try_fetch("https://" + src[len("http://"):])
            if upgraded is not None:
                logger.info("image upgraded to https url=%s", src)
                return upgraded
        return await self._try_fetch(src)

    def _register(self, response: FetchResponse, source_url: str) -> ImageAsset:
        extension = infer_extension(response.content_type, response.url, IMAGE_EXTENSIONS)
        filename = f"image_{self._counter}.{extension}"
        self._counter += 1
        asset = ImageAsset(filename=filename, content=response.body, extension=extension, source_url=source_url)
        self.images[filename] = asset
        self._by_source[source_url] = asset
        return asset

    async def extract_images(self, markup: str) -> str:
        try:
            document = load_markup(self._normalizer, markup)
        except MarkupParseError:
            logger.warning("images left untouched: markup could not be parsed")
            return markup

        for img in list(iter_by_local_name(document.root, "img")):
            src = str(img.get("src") or "").strip()
            if not is_remote_url(src):
                continue
            known = self._by_source.get(src)
            if known is not None:
                img.set("src", image_href(known.filename))
                continue
            response = await self._download(src)
            if response is None:
                self._diagnostics.record(
                    DiagnosticKind.ASSET_DEGRADATION,
                    "image could not be downloaded; element removed",
                    subject=src,
                )
                drop_element(img)
                continue
            asset = self._register(response, src)
            img.set("src", image_href(asset.filename))
        return dump_markup(self._normalizer, document)
