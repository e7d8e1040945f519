#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from llepub.epub import EpubSaver
from llepub.errors import EpubError
from llepub.fetch import is_remote_url


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build an EPUB 3 archive from a JSON book description."
    )
    parser.add_argument("input", help="Input JSON file path")
    parser.add_argument("-o", "--output", help="Output EPUB file path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every build step")
    return parser.parse_args(argv)


def _read_source(item: dict[str, Any], base_dir: Path) -> str:
    if item.get("file"):
        return (base_dir / str(item["file"])).read_text(encoding="utf-8")
    return str(item.get("content") or "")


def _metadata_items(raw: Any) -> list[tuple[str, Any, dict[str, str]]]:
    if isinstance(raw, dict):
        return [(str(key), value, {}) for key, value in raw.items()]
    items = []
    for entry in raw or []:
        items.append((str(entry["key"]), entry.get("value"), dict(entry.get("attributes") or {})))
    return items


async def build_from_description(description: dict[str, Any], base_dir: Path, output_path: Path) -> EpubSaver:
    saver = EpubSaver()
    for key, value, attributes in _metadata_items(description.get("metadata")):
        saver.set_info(key, value, attributes)

    cover = description.get("cover")
    if cover:
        if is_remote_url(cover):
            await saver.set_cover(cover)
        else:
            cover_path = base_dir / str(cover)
            await saver.set_cover(cover_path.read_bytes(), cover_path.suffix.lstrip(".") or None)

    for item in description.get("stylesheets") or []:
        saver.add_stylesheet(int(item["index"]), _read_source(item, base_dir), item.get("path"))
    if description.get("stylesheet_map"):
        await saver.import_stylesheet_map(description["stylesheet_map"])

    for volume in description.get("volumes") or []:
        volume_index = int(volume["index"])
        saver.add_volume(volume_index, str(volume.get("title") or ""), volume.get("options"))
        for chapter in volume.get("chapters") or []:
            await saver.add_chapter(
                volume_index,
                int(chapter["index"]),
                str(chapter.get("title") or ""),
                _read_source(chapter, base_dir),
                kind=chapter.get("kind", "text"),
                use_global_css=bool(chapter.get("use_global_css", False)),
                css_indices=chapter.get("css") or (),
                title_mode=chapter.get("title_mode"),
            )

    await saver.save(output_path)
    return saver


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Input file not found: {input_path}", file=sys.stderr)
        return 1

    output_path = Path(args.output) if args.output else input_path.with_suffix(".epub")
    try:
        description = json.loads(input_path.read_text(encoding="utf-8"))
        saver = asyncio.run(build_from_description(description, input_path.parent, output_path))
    except (EpubError, KeyError, ValueError, OSError) as exc:
        print(f"Failed to build EPUB: {exc}", file=sys.stderr)
        return 2

    for diagnostic in saver.diagnostics:
        print(f"warning: {diagnostic.kind.value}: {diagnostic.message} ({diagnostic.subject})", file=sys.stderr)
    print(f"EPUB saved to: {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
