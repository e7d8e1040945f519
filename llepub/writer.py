from __future__ import annotations

import datetime as dt
import io
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .settings import DEFAULT_COMPRESSION_LEVEL

MIMETYPE = b"application/epub+zip"
CONTAINER_PATH = "META-INF/container.xml"
PACKAGE_DIR = "OEBPS"
PACKAGE_DOCUMENT = "content.opf"
NCX_DOCUMENT = "toc.ncx"
NAV_DOCUMENT = "nav.xhtml"
TEXT_DIR = "Text"
STYLES_DIR = "Styles"
IMAGES_DIR = "Images"


def package_member(relative: str) -> str:
    return f"{PACKAGE_DIR}/{relative}"


@dataclass
class PackageEntry:
    path: str
    data: bytes


class PackageWriter:
    """Zip assembly: stored mimetype first, everything after it deflated."""

    def __init__(
        self,
        compression_level: int = DEFAULT_COMPRESSION_LEVEL,
        timestamp: Optional[dt.datetime] = None,
    ) -> None:
        self.compression_level = compression_level
        moment = timestamp or dt.datetime.now(dt.timezone.utc)
        parts = moment.timetuple()[:6]
        # Zip timestamps cannot predate 1980.
        self._date_time = (max(parts[0], 1980),) + tuple(parts[1:])

    def _zip_info(self, name: str, compress_type: int) -> zipfile.ZipInfo:
        info = zipfile.ZipInfo(name, date_time=self._date_time)  # type: ignore[arg-type]
        info.compress_type = compress_type
        info.external_attr = 0o644 << 16
        return info

    def write(self, entries: Iterable[PackageEntry]) -> bytes:
        buffer = io.BytesIO()
        written: set[str] = {"mimetype"}
        with zipfile.ZipFile(buffer, "w") as zf:
            # EPUB readers sniff the first local header: mimetype, stored, no extra field.
            zf.writestr(self._zip_info("mimetype", zipfile.ZIP_STORED), MIMETYPE)
            for entry in entries:
                if entry.path in written:
                    raise ValueError(f"Duplicate archive entry: {entry.path}")
                zf.writestr(
                    self._zip_info(entry.path, zipfile.ZIP_DEFLATED),
                    entry.data,
                    compresslevel=self.compression_level,
                )
                written.add(entry.path)
        return buffer.getvalue()

    def write_to(self, entries: Iterable[PackageEntry], output_path: Path) -> bytes:
        payload = self.write(entries)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(payload)
        return payload
