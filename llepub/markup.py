from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Iterator, Optional, Protocol

from lxml import etree as LXML_ET
from lxml import html as LXML_HTML

XHTML_NS = "http://www.w3.org/1999/xhtml"
XML_NS = "http://www.w3.org/XML/1998/namespace"
OPS_NS = "http://www.idpf.org/2007/ops"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'
VIEWPORT_CONTENT = "width=device-width, height=device-height, initial-scale=1.0"
HEADING_TAGS = ("h1", "h2", "h3", "h4", "h5", "h6")

_XML_DECL_RE = re.compile(r"^\ufeff?\s*<\?xml\b[^>]*\?>\s*", flags=re.IGNORECASE)
_DOCUMENT_RE = re.compile(r"<html[\s>/]|<!doctype", flags=re.IGNORECASE)
# The lenient parser keeps "epub:type" and friends as plain names with a colon.
_ATTRIBUTE_PREFIXES = {"epub": OPS_NS, "xml": XML_NS}


class MarkupParseError(ValueError):
    pass


class MarkupNormalizer(Protocol):
    def parse_xml(self, text: str) -> LXML_ET._Element: ...

    def parse_html(self, text: str) -> LXML_ET._Element: ...

    def serialize(self, root: LXML_ET._Element) -> str: ...


class LxmlNormalizer:
    def parse_xml(self, text: str) -> LXML_ET._Element:
        parser = LXML_ET.XMLParser(resolve_entities=False, no_network=True, recover=False)
        try:
            return LXML_ET.fromstring(_strip_xml_declaration(text), parser=parser)
        except (LXML_ET.XMLSyntaxError, ValueError) as exc:
            raise MarkupParseError(str(exc)) from exc

    def parse_html(self, text: str) -> LXML_ET._Element:
        try:
            return LXML_HTML.document_fromstring(_strip_xml_declaration(text))
        except (LXML_ET.ParserError, LXML_ET.XMLSyntaxError, ValueError) as exc:
            raise MarkupParseError(str(exc)) from exc

    def serialize(self, root: LXML_ET._Element) -> str:
        return LXML_ET.tostring(root, encoding="unicode", method="xml")


@dataclass
class MarkupDocument:
    root: LXML_ET._Element
    # "xml" for well-formed XHTML, "html" for leniently parsed documents,
    # "fragment" for body content wrapped by load_markup.
    mode: str


def _strip_xml_declaration(text: str) -> str:
    return _XML_DECL_RE.sub("", text or "", count=1)


def looks_like_document(text: str) -> bool:
    return bool(_DOCUMENT_RE.search(text or ""))


def local_name(tag: object) -> str:
    if not tag or not isinstance(tag, str):
        return ""
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def namespace_of(tag: object) -> Optional[str]:
    if isinstance(tag, str) and tag.startswith("{"):
        return tag[1:].split("}", 1)[0]
    return None


def iter_by_local_name(root: LXML_ET._Element, *names: str) -> Iterator[LXML_ET._Element]:
    wanted = set(names)
    for node in root.iter():
        if local_name(node.tag) in wanted:
            yield node


def find_first(root: LXML_ET._Element, *names: str) -> Optional[LXML_ET._Element]:
    return next(iter_by_local_name(root, *names), None)


def child_by_local_name(node: LXML_ET._Element, name: str) -> Optional[LXML_ET._Element]:
    for child in node:
        if local_name(child.tag) == name:
            return child
    return None


def new_element(context: LXML_ET._Element, name: str, attrib: Optional[dict[str, str]] = None) -> LXML_ET._Element:
    namespace = namespace_of(context.tag)
    tag = f"{{{namespace}}}{name}" if namespace else name
    return context.makeelement(tag, attrib or {})


def drop_element(element: LXML_ET._Element) -> None:
    parent = element.getparent()
    if parent is None:
        return
    tail = element.tail
    if tail:
        previous = element.getprevious()
        if previous is not None:
            previous.tail = (previous.tail or "") + tail
        else:
            parent.text = (parent.text or "") + tail
    parent.remove(element)


def _qualified_attribute(name: str) -> Optional[str]:
    """Namespaced form of a lenient-parser attribute name, None to drop it."""
    if name == "xmlns":
        return None
    if name.startswith("{") or ":" not in name:
        return name
    prefix, _, local = name.partition(":")
    uri = _ATTRIBUTE_PREFIXES.get(prefix)
    if uri is None or not local:
        return None
    return f"{{{uri}}}{local}"


def _qualify_attributes(node: LXML_ET._Element) -> None:
    items = list(node.attrib.items())
    if all(_qualified_attribute(name) == name for name, _ in items):
        return
    node.attrib.clear()
    for name, value in items:
        qualified = _qualified_attribute(name)
        if qualified is None:
            continue
        try:
            node.set(qualified, value)
        except ValueError:
            continue


def ensure_xhtml_namespace(root: LXML_ET._Element) -> LXML_ET._Element:
    if namespace_of(root.tag) == XHTML_NS:
        return root
    for node in root.iter():
        if isinstance(node.tag, str) and namespace_of(node.tag) is None:
            node.tag = f"{{{XHTML_NS}}}{node.tag}"

    nsmap: dict[Optional[str], str] = {None: XHTML_NS, "epub": OPS_NS}
    for prefix, uri in (root.nsmap or {}).items():
        if prefix and uri not in (XHTML_NS, OPS_NS) and prefix not in nsmap:
            nsmap[prefix] = uri
    rebuilt = LXML_ET.Element(f"{{{XHTML_NS}}}html", nsmap=nsmap)
    for name, value in root.attrib.items():
        qualified = _qualified_attribute(name)
        if qualified is None:
            continue
        try:
            rebuilt.set(qualified, value)
        except ValueError:
            continue
    rebuilt.text = root.text
    for child in list(root):
        rebuilt.append(child)
    for node in rebuilt.iter():
        if isinstance(node.tag, str):
            _qualify_attributes(node)
    return rebuilt


def load_markup(normalizer: MarkupNormalizer, text: str) -> MarkupDocument:
    if looks_like_document(text):
        try:
            root = normalizer.parse_xml(text)
        except MarkupParseError:
            root = None
        if root is not None and local_name(root.tag) == "html":
            return MarkupDocument(root=root, mode="xml")
        return MarkupDocument(root=normalizer.parse_html(text), mode="html")
    wrapped = f"<html><head></head><body>{text}</body></html>"
    return MarkupDocument(root=normalizer.parse_html(wrapped), mode="fragment")


def dump_markup(normalizer: MarkupNormalizer, document: MarkupDocument) -> str:
    if document.mode != "fragment":
        return normalizer.serialize(document.root)
    body = find_first(document.root, "body")
    if body is None:
        return ""
    parts = [html.escape(body.text, quote=False)] if body.text else []
    # tostring() carries each child's tail along with it.
    parts.extend(normalizer.serialize(child) for child in body)
    return "".join(parts)


def text_paragraphs(content: str) -> list[list[str]]:
    normalized = (content or "").replace("\r\n", "\n").replace("\r", "\n")
    paragraphs: list[list[str]] = []
    for block in re.split(r"\n[ \t]*\n", normalized):
        if not block.strip():
            continue
        paragraphs.append(block.strip("\n").split("\n"))
    return paragraphs
