from __future__ import annotations

import datetime as dt
import uuid
from typing import Callable, Optional

from .models import MetadataEntry

DEFAULT_LANGUAGE = "en"
IDENTIFIER_KEY = "identifier"
IDENTIFIER_ELEMENT_ID = "BookId"

I18N_LABELS: dict[str, dict[str, str]] = {
    "en": {"cover": "Cover", "tableOfContents": "Table of Contents", "chapters": "Chapters"},
    "zh-CN": {"cover": "封面", "tableOfContents": "目录", "chapters": "章节"},
    "zh-TW": {"cover": "封面", "tableOfContents": "目錄", "chapters": "章節"},
    "es": {"cover": "Portada", "tableOfContents": "Índice", "chapters": "Capítulos"},
    "fr": {"cover": "Couverture", "tableOfContents": "Table des matières", "chapters": "Chapitres"},
    "de": {"cover": "Cover", "tableOfContents": "Inhaltsverzeichnis", "chapters": "Kapitel"},
    "ja": {"cover": "表紙", "tableOfContents": "目次", "chapters": "章"},
    "ko": {"cover": "표지", "tableOfContents": "목차", "chapters": "장"},
    "ru": {"cover": "Обложка", "tableOfContents": "Содержание", "chapters": "Главы"},
    "pt": {"cover": "Capa", "tableOfContents": "Índice", "chapters": "Capítulos"},
    "it": {"cover": "Copertina", "tableOfContents": "Indice", "chapters": "Capitoli"},
}


def new_identifier() -> str:
    return str(uuid.uuid4())


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def format_timestamp(moment: dt.datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(dt.timezone.utc)
    return moment.replace(microsecond=0, tzinfo=None).isoformat() + "Z"


class MetadataStore:
    def __init__(
        self,
        *,
        identifier_factory: Callable[[], str] = new_identifier,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self._identifier_factory = identifier_factory
        self._entries: dict[str, MetadataEntry] = {}
        self._labels: dict[str, dict[str, str]] = {lang: dict(table) for lang, table in I18N_LABELS.items()}

        self.set_info(IDENTIFIER_KEY, identifier_factory(), {"id": IDENTIFIER_ELEMENT_ID, "opf:scheme": "uuid"})
        self.set_info("date", format_timestamp(clock()), {"opf:event": "modification"})
        self.set_info("language", DEFAULT_LANGUAGE)
        self.set_info("title", "Untitled Book")
        self.set_info("creator", "Unknown Author")

    def set_info(self, key: str, value: object, attributes: Optional[dict[str, str]] = None) -> MetadataEntry:
        text = "" if value is None else str(value)
        attrs = {str(name): str(attr) for name, attr in (attributes or {}).items()}
        if key == IDENTIFIER_KEY:
            if not text.strip():
                text = self._identifier_factory()
            # The package's unique-identifier points at this element id.
            attrs.setdefault("id", IDENTIFIER_ELEMENT_ID)
        entry = MetadataEntry(key=key, value=text, attributes=attrs)
        self._entries[key] = entry
        return entry

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        entry = self._entries.get(key)
        return entry.value if entry is not None else default

    def entries(self) -> list[MetadataEntry]:
        return list(self._entries.values())

    @property
    def identifier(self) -> str:
        return self.get(IDENTIFIER_KEY) or ""

    @property
    def title(self) -> str:
        return self.get("title") or "Untitled Book"

    @property
    def language(self) -> str:
        return self.get("language") or DEFAULT_LANGUAGE

    def set_i18n(self, language: str, translations: dict[str, str]) -> None:
        self._labels.setdefault(language, {}).update(translations)

    def translate(self, key: str) -> str:
        current = self._labels.get(self.language, {})
        if key in current:
            return current[key]
        return self._labels.get(DEFAULT_LANGUAGE, {}).get(key, key)
