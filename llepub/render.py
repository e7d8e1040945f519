from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from lxml import etree as LXML_ET

from .assets import AssetPipeline, guess_image_media_type, image_href
from .content import ContentModel, chapter_id, chapter_path, volume_page_id, volume_page_path
from .diagnostics import DiagnosticKind, DiagnosticLog
from .markup import (
    HEADING_TAGS,
    VIEWPORT_CONTENT,
    XML_DECLARATION,
    XML_NS,
    MarkupNormalizer,
    child_by_local_name,
    ensure_xhtml_namespace,
    find_first,
    iter_by_local_name,
    load_markup,
    new_element,
    text_paragraphs,
)
from .metadata import IDENTIFIER_ELEMENT_ID, MetadataStore
from .models import Chapter, ImageAsset, TitleMode, Volume, VolumePageType
from .styles import StylesheetRegistry, indexed_stylesheet_name, stylesheet_href
from .writer import (
    CONTAINER_PATH,
    IMAGES_DIR,
    NAV_DOCUMENT,
    NCX_DOCUMENT,
    PACKAGE_DOCUMENT,
    STYLES_DIR,
    PackageEntry,
    package_member,
)

logger = logging.getLogger("llepub.render")

EPUB_TEMPLATES_DIR = Path(__file__).resolve().parent / "epub_templates"
XHTML_MEDIA_TYPE = "application/xhtml+xml"
NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
CSS_MEDIA_TYPE = "text/css"
COVER_PAGE_PATH = "Text/cover.xhtml"
COVER_IMAGE_ID = "cover-image"
COVER_PAGE_ID = "cover"
NCX_ID = "ncx"
NAV_ID = "nav"

_XML_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9._\-]*$")
_XML_ATTR_NAME_RE = re.compile(r"^((opf|xml):)?[A-Za-z_][A-Za-z0-9._\-]*$")
_ID_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9]")


@lru_cache(maxsize=1)
def _epub_template_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(EPUB_TEMPLATES_DIR)),
        autoescape=select_autoescape(
            enabled_extensions=("xml", "xhtml", "opf", "ncx", "j2"),
            default_for_string=False,
        ),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _render_epub_template(template_name: str, **context: object) -> str:
    return _epub_template_env().get_template(template_name).render(**context)


@dataclass
class TocEntry:
    entry_id: str
    title: str
    href: str
    children: list[TocEntry] = field(default_factory=list)
    play_order: int = 0


@dataclass
class ManifestItem:
    item_id: str
    href: str
    media_type: str
    properties: Optional[str] = None


def cover_image_name(extension: str) -> str:
    return f"cover.{extension}"


def _volume_toc_entry(volume: Volume) -> Optional[TocEntry]:
    chapters = volume.sorted_chapters()
    options = volume.options
    children = [
        TocEntry(
            entry_id=chapter_id(volume.index, chapter.index),
            title=chapter.title,
            href=chapter_path(volume.index, chapter.index),
        )
        for chapter in chapters
    ]
    if options.create_volume_page:
        href = volume_page_path(volume.index)
    elif chapters:
        href = children[0].href
    else:
        # Nothing inside the package to point at.
        return None

    entry = TocEntry(entry_id=f"volume-{volume.index}", title=volume.title, href=href)
    if len(chapters) > 1 or options.always_show_volume_title or options.create_volume_page:
        entry.children = children
    return entry


def _assign_play_order(entries: Iterable[TocEntry], start: int = 1) -> int:
    order = start
    for entry in entries:
        entry.play_order = order
        order = _assign_play_order(entry.children, order + 1)
    return order


def build_toc(content: ContentModel, *, cover_label: Optional[str] = None) -> list[TocEntry]:
    """One logical tree shared by the NCX and the nav document."""
    entries: list[TocEntry] = []
    if cover_label is not None:
        entries.append(TocEntry(entry_id=COVER_PAGE_ID, title=cover_label, href=COVER_PAGE_PATH))
    for volume in content.sorted_volumes():
        entry = _volume_toc_entry(volume)
        if entry is None:
            logger.info("volume %s has no chapters and no page; left out of the toc", volume.index)
            continue
        entries.append(entry)
    _assign_play_order(entries)
    return entries


def toc_depth(entries: Iterable[TocEntry]) -> int:
    depths = [1 + toc_depth(entry.children) for entry in entries]
    return max(depths) if depths else 0


def _sanitize_id(value: str) -> str:
    return _ID_UNSAFE_RE.sub("-", value)


def linked_images(assets: AssetPipeline, content: ContentModel) -> dict[str, ImageAsset]:
    """Downloaded images that some chapter still links to.

    Replacing a chapter leaves the images of its old content registered;
    those are not packaged.
    """
    bodies = [chapter.content for volume in content.sorted_volumes() for chapter in volume.sorted_chapters()]
    linked: dict[str, ImageAsset] = {}
    for filename, image in assets.images.items():
        if any(image_href(filename) in body for body in bodies):
            linked[filename] = image
        else:
            logger.debug("image not packaged, no chapter links it: %s", filename)
    return linked


def build_manifest(
    styles: StylesheetRegistry,
    assets: AssetPipeline,
    content: ContentModel,
) -> tuple[list[ManifestItem], list[str]]:
    manifest = [
        ManifestItem(NCX_ID, NCX_DOCUMENT, NCX_MEDIA_TYPE),
        ManifestItem(NAV_ID, NAV_DOCUMENT, XHTML_MEDIA_TYPE, properties="nav"),
    ]
    spine: list[str] = []

    if assets.cover is not None:
        manifest.append(
            ManifestItem(
                COVER_IMAGE_ID,
                f"{IMAGES_DIR}/{cover_image_name(assets.cover.extension)}",
                guess_image_media_type(assets.cover.extension),
                properties="cover-image",
            )
        )
        manifest.append(ManifestItem(COVER_PAGE_ID, COVER_PAGE_PATH, XHTML_MEDIA_TYPE))
        spine.append(COVER_PAGE_ID)

    for filename, image in linked_images(assets, content).items():
        manifest.append(
            ManifestItem(
                f"img-{_sanitize_id(filename)}",
                f"{IMAGES_DIR}/{filename}",
                guess_image_media_type(image.extension),
            )
        )

    for entry in styles.sorted_stylesheets():
        manifest.append(
            ManifestItem(f"css{entry.index}", f"{STYLES_DIR}/{indexed_stylesheet_name(entry.index)}", CSS_MEDIA_TYPE)
        )

    used_ids = {item.item_id for item in manifest}
    for path, _ in styles.mapped_stylesheets():
        base_id = f"css-map-{_sanitize_id(path)}"
        item_id = base_id
        suffix = 2
        # "a.b.css" and "a-b.css" sanitize to the same id.
        while item_id in used_ids:
            item_id = f"{base_id}-{suffix}"
            suffix += 1
        used_ids.add(item_id)
        manifest.append(ManifestItem(item_id, f"{STYLES_DIR}/{path}", CSS_MEDIA_TYPE))

    for volume in content.sorted_volumes():
        if volume.options.create_volume_page:
            item_id = volume_page_id(volume.index)
            manifest.append(ManifestItem(item_id, volume_page_path(volume.index), XHTML_MEDIA_TYPE))
            spine.append(item_id)
        for chapter in volume.sorted_chapters():
            item_id = chapter_id(volume.index, chapter.index)
            manifest.append(ManifestItem(item_id, chapter_path(volume.index, chapter.index), XHTML_MEDIA_TYPE))
            spine.append(item_id)

    return manifest, spine


def _metadata_context(metadata: MetadataStore) -> list[dict[str, object]]:
    rendered: list[dict[str, object]] = []
    for entry in metadata.entries():
        if not _XML_NAME_RE.match(entry.key):
            logger.warning("metadata key skipped: %r is not a valid element name", entry.key)
            continue
        attributes = {}
        for name, value in entry.attributes.items():
            if not _XML_ATTR_NAME_RE.match(name):
                logger.warning("metadata attribute skipped: %r on %s", name, entry.key)
                continue
            attributes[name] = value
        rendered.append({"key": entry.key, "value": entry.value, "attributes": attributes})
    return rendered


def render_container() -> str:
    return _render_epub_template("container.xml.j2", package_path=package_member(PACKAGE_DOCUMENT))


def render_package_document(
    metadata: MetadataStore,
    styles: StylesheetRegistry,
    assets: AssetPipeline,
    content: ContentModel,
    *,
    modified: str,
) -> str:
    manifest, spine = build_manifest(styles, assets, content)
    return _render_epub_template(
        "content.opf.j2",
        unique_identifier=IDENTIFIER_ELEMENT_ID,
        metadata=_metadata_context(metadata),
        modified=modified,
        cover_item_id=COVER_IMAGE_ID if assets.cover is not None else None,
        manifest=manifest,
        spine=spine,
        ncx_item_id=NCX_ID,
    )


def render_ncx(metadata: MetadataStore, toc: list[TocEntry]) -> str:
    return _render_epub_template(
        "toc.ncx.j2",
        uid=metadata.identifier,
        depth=max(toc_depth(toc), 1),
        title=metadata.title,
        entries=toc,
    )


def render_nav(metadata: MetadataStore, toc: list[TocEntry]) -> str:
    return _render_epub_template(
        "nav.xhtml.j2",
        lang=metadata.language,
        title=metadata.title,
        toc_label=metadata.translate("tableOfContents"),
        viewport=VIEWPORT_CONTENT,
        entries=toc,
    )


def render_cover_page(metadata: MetadataStore, extension: str) -> str:
    return _render_epub_template(
        "cover.xhtml.j2",
        lang=metadata.language,
        title=metadata.title,
        cover_label=metadata.translate("cover"),
        viewport=VIEWPORT_CONTENT,
        image_href=image_href(cover_image_name(extension)),
    )


def render_volume_page(metadata: MetadataStore, styles: StylesheetRegistry, volume: Volume) -> str:
    stylesheets = [stylesheet_href(indexed_stylesheet_name(0))] if styles.has_index(0) else []
    chapters = []
    if volume.options.volume_page_type is VolumePageType.NAVIGATOR:
        chapters = [
            {
                # The volume page sits next to its chapters under Text/.
                "href": posixpath.basename(chapter_path(volume.index, chapter.index)),
                "title": chapter.title,
            }
            for chapter in volume.sorted_chapters()
        ]
    return _render_epub_template(
        "volume.xhtml.j2",
        lang=metadata.language,
        title=volume.title,
        viewport=VIEWPORT_CONTENT,
        stylesheets=stylesheets,
        chapters=chapters,
        chapters_label=metadata.translate("chapters"),
    )


def chapter_stylesheet_hrefs(chapter: Chapter, styles: StylesheetRegistry) -> list[str]:
    hrefs: list[str] = []
    if chapter.use_global_css and styles.has_index(0):
        hrefs.append(stylesheet_href(indexed_stylesheet_name(0)))
    for index in chapter.css_indices:
        # Stylesheet 0 is only ever linked through use_global_css.
        if index == 0:
            continue
        if not styles.has_index(index):
            logger.debug("chapter %r references unregistered stylesheet %s", chapter.title, index)
            continue
        href = stylesheet_href(indexed_stylesheet_name(index))
        if href not in hrefs:
            hrefs.append(href)
    return hrefs


def render_text_chapter(chapter: Chapter, stylesheets: list[str], *, lang: str) -> str:
    return _render_epub_template(
        "chapter.xhtml.j2",
        lang=lang,
        title=chapter.title,
        viewport=VIEWPORT_CONTENT,
        stylesheets=stylesheets,
        show_heading=chapter.title_mode is not TitleMode.NEVER,
        paragraphs=text_paragraphs(chapter.content),
    )


def _wants_heading(mode: TitleMode, body: LXML_ET._Element) -> bool:
    if mode is TitleMode.NEVER:
        return False
    if mode is TitleMode.ALWAYS:
        return True
    return find_first(body, *HEADING_TAGS) is None


def _coerce_document(root: LXML_ET._Element, chapter: Chapter, stylesheets: list[str], lang: str) -> LXML_ET._Element:
    root = ensure_xhtml_namespace(root)
    if root.get("lang") is None and root.get(f"{{{XML_NS}}}lang") is None:
        root.set(f"{{{XML_NS}}}lang", lang)

    body = child_by_local_name(root, "body")
    if body is None:
        body = new_element(root, "body")
        root.append(body)
    head = child_by_local_name(root, "head")
    if head is None:
        head = new_element(root, "head")
        root.insert(0, head)

    if find_first(head, "title") is None:
        title = new_element(head, "title")
        title.text = chapter.title
        head.insert(0, title)

    has_viewport = any(
        str(meta.get("name") or "").lower() == "viewport" for meta in iter_by_local_name(head, "meta")
    )
    if not has_viewport:
        head.append(new_element(head, "meta", {"name": "viewport", "content": VIEWPORT_CONTENT}))

    linked = {str(link.get("href") or "") for link in iter_by_local_name(head, "link")}
    for href in stylesheets:
        if href in linked:
            continue
        head.append(new_element(head, "link", {"rel": "stylesheet", "type": "text/css", "href": href}))
        linked.add(href)

    if _wants_heading(chapter.title_mode, body):
        heading = new_element(body, "h2")
        heading.text = chapter.title
        heading.tail = body.text
        body.text = None
        body.insert(0, heading)
    return root


def render_markup_chapter(
    chapter: Chapter,
    stylesheets: list[str],
    *,
    lang: str,
    normalizer: MarkupNormalizer,
    diagnostics: DiagnosticLog,
) -> str:
    try:
        document = load_markup(normalizer, chapter.content)
        root = _coerce_document(document.root, chapter, stylesheets, lang)
        serialized = normalizer.serialize(root)
    except (ValueError, LXML_ET.LxmlError) as exc:
        diagnostics.record(
            DiagnosticKind.MARKUP_FALLBACK,
            f"chapter markup could not be parsed ({exc}); emitted unchanged",
            subject=chapter.title,
        )
        return chapter.content
    return XML_DECLARATION + serialized


def render_chapter(
    chapter: Chapter,
    styles: StylesheetRegistry,
    *,
    lang: str,
    normalizer: MarkupNormalizer,
    diagnostics: DiagnosticLog,
) -> str:
    stylesheets = chapter_stylesheet_hrefs(chapter, styles)
    if chapter.kind.is_markup:
        return render_markup_chapter(chapter, stylesheets, lang=lang, normalizer=normalizer, diagnostics=diagnostics)
    return render_text_chapter(chapter, stylesheets, lang=lang)


def _text_entry(relative: str, text: str) -> PackageEntry:
    return PackageEntry(path=package_member(relative), data=text.encode("utf-8"))


def render_package(
    metadata: MetadataStore,
    styles: StylesheetRegistry,
    assets: AssetPipeline,
    content: ContentModel,
    *,
    normalizer: MarkupNormalizer,
    diagnostics: DiagnosticLog,
    modified: str,
) -> list[PackageEntry]:
    """Every archive entry after the mimetype marker, in write order."""
    cover_label = metadata.translate("cover") if assets.cover is not None else None
    toc = build_toc(content, cover_label=cover_label)
    lang = metadata.language

    entries = [
        PackageEntry(path=CONTAINER_PATH, data=render_container().encode("utf-8")),
        _text_entry(PACKAGE_DOCUMENT, render_package_document(metadata, styles, assets, content, modified=modified)),
        _text_entry(NCX_DOCUMENT, render_ncx(metadata, toc)),
        _text_entry(NAV_DOCUMENT, render_nav(metadata, toc)),
    ]

    if assets.cover is not None:
        cover_name = cover_image_name(assets.cover.extension)
        entries.append(PackageEntry(path=package_member(f"{IMAGES_DIR}/{cover_name}"), data=assets.cover.content))
        entries.append(_text_entry(COVER_PAGE_PATH, render_cover_page(metadata, assets.cover.extension)))

    images = linked_images(assets, content)
    for filename, image in images.items():
        entries.append(PackageEntry(path=package_member(f"{IMAGES_DIR}/{filename}"), data=image.content))

    for stylesheet in styles.sorted_stylesheets():
        entries.append(_text_entry(f"{STYLES_DIR}/{indexed_stylesheet_name(stylesheet.index)}", stylesheet.content))
    for path, css in styles.mapped_stylesheets():
        entries.append(_text_entry(f"{STYLES_DIR}/{path}", css))

    for volume in content.sorted_volumes():
        if volume.options.create_volume_page:
            entries.append(_text_entry(volume_page_path(volume.index), render_volume_page(metadata, styles, volume)))
        for chapter in volume.sorted_chapters():
            rendered = render_chapter(chapter, styles, lang=lang, normalizer=normalizer, diagnostics=diagnostics)
            entries.append(_text_entry(chapter_path(volume.index, chapter.index), rendered))

    logger.info(
        "rendered package title=%r volumes=%d images=%d entries=%d",
        metadata.title,
        len(content),
        len(images),
        len(entries),
    )
    return entries
