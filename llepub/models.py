from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional


class ContentKind(enum.Enum):
    TEXT = "text"
    HTML = "html"
    XHTML = "xhtml"

    @property
    def is_markup(self) -> bool:
        return self is not ContentKind.TEXT


class TitleMode(enum.Enum):
    AUTO = "auto"
    ALWAYS = "always"
    NEVER = "never"


class VolumePageType(enum.Enum):
    NAVIGATOR = "navigator"
    BLANK = "blank"


@dataclass
class MetadataEntry:
    key: str
    value: str
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass
class VolumeOptions:
    always_show_volume_title: bool = False
    create_volume_page: bool = False
    volume_page_type: VolumePageType = VolumePageType.NAVIGATOR


@dataclass
class Chapter:
    index: int
    title: str
    content: str
    kind: ContentKind = ContentKind.TEXT
    use_global_css: bool = False
    css_indices: list[int] = field(default_factory=list)
    title_mode: TitleMode = TitleMode.AUTO


@dataclass
class Volume:
    index: int
    title: str
    options: VolumeOptions = field(default_factory=VolumeOptions)
    chapters: dict[int, Chapter] = field(default_factory=dict)

    def sorted_chapters(self) -> list[Chapter]:
        return [self.chapters[idx] for idx in sorted(self.chapters)]


@dataclass
class StylesheetEntry:
    index: int
    content: str
    path_hint: Optional[str] = None


@dataclass
class ImageAsset:
    filename: str
    content: bytes
    extension: str
    source_url: str


@dataclass
class CoverImage:
    content: bytes
    extension: str = "jpg"


def content_kind_from_value(value: Any) -> ContentKind:
    if isinstance(value, ContentKind):
        return value
    normalized = str(value or "text").strip().lower()
    try:
        return ContentKind(normalized)
    except ValueError as exc:
        raise ValueError(f"Unknown content kind: {value!r}") from exc


def title_mode_from_value(value: Any) -> TitleMode:
    if isinstance(value, TitleMode):
        return value
    if value is None:
        return TitleMode.AUTO
    if value is True:
        return TitleMode.ALWAYS
    if value is False:
        return TitleMode.NEVER
    normalized = str(value).strip().lower()
    try:
        return TitleMode(normalized)
    except ValueError as exc:
        raise ValueError(f"Unknown title mode: {value!r}") from exc


def volume_options_from_dict(data: Optional[dict]) -> VolumeOptions:
    data = data or {}

    def pick(snake: str, camel: str, default: Any) -> Any:
        if snake in data:
            return data[snake]
        return data.get(camel, default)

    page_type = pick("volume_page_type", "volumePageType", VolumePageType.NAVIGATOR)
    if not isinstance(page_type, VolumePageType):
        page_type = VolumePageType(str(page_type).strip().lower())
    return VolumeOptions(
        always_show_volume_title=bool(pick("always_show_volume_title", "alwaysShowVolumeTitle", False)),
        create_volume_page=bool(pick("create_volume_page", "createVolumePage", False)),
        volume_page_type=page_type,
    )
