from __future__ import annotations

from typing import Iterable, Optional

from .models import Chapter, ContentKind, TitleMode, Volume, VolumeOptions


def volume_page_path(volume_index: int) -> str:
    return f"Text/volume{volume_index}_index.xhtml"


def chapter_path(volume_index: int, chapter_index: int) -> str:
    return f"Text/volume{volume_index}_chapter{chapter_index}.xhtml"


def volume_page_id(volume_index: int) -> str:
    return f"volume-page-{volume_index}"


def chapter_id(volume_index: int, chapter_index: int) -> str:
    return f"chapter-{volume_index}-{chapter_index}"


class ContentModel:
    def __init__(self) -> None:
        self._volumes: dict[int, Volume] = {}

    def add_volume(self, index: int, title: str, options: Optional[VolumeOptions] = None) -> Volume:
        volume = Volume(index=index, title=title, options=options or VolumeOptions())
        self._volumes[index] = volume
        return volume

    def get_volume(self, index: int) -> Volume:
        try:
            return self._volumes[index]
        except KeyError as exc:
            raise KeyError(f"Volume {index} is not registered") from exc

    def add_chapter(
        self,
        volume_index: int,
        chapter_index: int,
        title: str,
        content: str,
        kind: ContentKind = ContentKind.TEXT,
        use_global_css: bool = False,
        css_indices: Iterable[int] = (),
        title_mode: TitleMode = TitleMode.AUTO,
    ) -> Chapter:
        volume = self.get_volume(volume_index)
        chapter = Chapter(
            index=chapter_index,
            title=title,
            content=content or "",
            kind=kind,
            use_global_css=use_global_css,
            css_indices=[int(idx) for idx in css_indices],
            title_mode=title_mode,
        )
        volume.chapters[chapter_index] = chapter
        return chapter

    def sorted_volumes(self) -> list[Volume]:
        return [self._volumes[idx] for idx in sorted(self._volumes)]

    def __len__(self) -> int:
        return len(self._volumes)
