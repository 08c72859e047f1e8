"""
Shared CommerceML 2.x document handling.

Normalizes the declared encoding to UTF-8, parses with lxml and offers
namespace-insensitive element lookups. Documents from 1C frequently
arrive in windows-1251 and may or may not declare the
urn:1C.ru:commerceml_2 default namespace.
"""

import codecs
import re
from typing import Iterator, Optional
import structlog

from lxml import etree

from exceptions import MalformedDocumentError
from models.catalog import DocumentKind

logger = structlog.get_logger(__name__)

CANONICAL_ENCODING = "UTF-8"

# Bytes inspected when sniffing the document kind
SNIFF_BYTES = 1000

_DECLARATION_RE = re.compile(
    rb"""^(\s*<\?xml[^>]*?encoding\s*=\s*["']?)([A-Za-z0-9._:-]+)(["']?)""",
    re.IGNORECASE,
)

# Markers that identify a document kind; offers first because offers
# documents reference the classifier by id (ИдКлассификатора).
_KIND_MARKERS: list[tuple[DocumentKind, tuple[str, ...]]] = [
    (DocumentKind.OFFERS, ("ПакетПредложений",)),
    (DocumentKind.CATALOG, ("Каталог", "Классификатор")),
]


# ===================
# ENCODING
# ===================

def detect_encoding(content: bytes) -> Optional[str]:
    """Return the encoding named in the XML declaration, if any."""
    match = _DECLARATION_RE.match(content[:200])
    if not match:
        return None
    return match.group(2).decode("ascii")


def normalize_encoding(content: bytes) -> bytes:
    """
    Re-encode a document to UTF-8 and fix its declaration.

    Undeclared documents are assumed to be UTF-8 already.

    Raises:
        MalformedDocumentError: Unknown codec or bytes that do not decode
    """
    if content.startswith(codecs.BOM_UTF8):
        content = content[len(codecs.BOM_UTF8):]

    declared = detect_encoding(content)
    if declared is None:
        return content

    try:
        codec = codecs.lookup(declared)
    except LookupError:
        raise MalformedDocumentError(
            message=f"Unsupported document encoding: {declared}",
            details={"encoding": declared}
        )

    if codec.name == "utf-8":
        return content

    try:
        text = content.decode(codec.name)
    except UnicodeDecodeError as e:
        raise MalformedDocumentError(
            message=f"Document is not valid {declared}",
            details={"encoding": declared, "position": e.start}
        )

    logger.debug("document_reencoded", source_encoding=declared)

    converted = text.encode("utf-8")
    return _DECLARATION_RE.sub(
        lambda m: m.group(1) + CANONICAL_ENCODING.encode("ascii") + m.group(3),
        converted,
        count=1,
    )


# ===================
# PARSING
# ===================

def load_document(content: bytes) -> etree._Element:
    """
    Parse a CommerceML document into its root element.

    Raises:
        MalformedDocumentError: Empty input or XML that is not well-formed
    """
    if not content or not content.strip():
        raise MalformedDocumentError(message="Document is empty")

    normalized = normalize_encoding(content)

    parser = etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        huge_tree=True,
        remove_blank_text=True,
        strip_cdata=True,
    )
    try:
        root = etree.fromstring(normalized, parser=parser)
    except etree.XMLSyntaxError as e:
        logger.error("xml_parse_failed", error=str(e), line=e.lineno)
        raise MalformedDocumentError(
            message="Failed to parse XML document",
            details={"original_error": str(e), "line": e.lineno}
        )

    return root


def detect_document_kind(content: bytes) -> Optional[DocumentKind]:
    """
    Sniff the first bytes of a document for a kind marker.

    The head is decoded with the declared encoding so windows-1251
    documents are recognised too.
    """
    head = content[:SNIFF_BYTES]
    encoding = detect_encoding(head) or CANONICAL_ENCODING
    try:
        text = head.decode(encoding, errors="ignore")
    except LookupError:
        text = head.decode(CANONICAL_ENCODING, errors="ignore")

    for kind, markers in _KIND_MARKERS:
        if any(marker in text for marker in markers):
            return kind
    return None


# ===================
# ELEMENT HELPERS
# ===================

def local_name(element: etree._Element) -> str:
    """Tag without namespace."""
    tag = element.tag
    if not isinstance(tag, str):
        return ""  # Comments and processing instructions
    return etree.QName(tag).localname


def children(element: Optional[etree._Element], name: str) -> Iterator[etree._Element]:
    """Direct children with the given local name."""
    if element is None:
        return
    for child in element:
        if local_name(child) == name:
            yield child


def child(element: Optional[etree._Element], name: str) -> Optional[etree._Element]:
    """First direct child with the given local name."""
    return next(children(element, name), None)


def path(element: Optional[etree._Element], *names: str) -> Optional[etree._Element]:
    """Follow a chain of first children, e.g. path(offer, 'Цены')."""
    current = element
    for name in names:
        current = child(current, name)
        if current is None:
            return None
    return current


def text(element: Optional[etree._Element], name: Optional[str] = None, default: str = "") -> str:
    """Stripped text of an element, or of its named child."""
    target = child(element, name) if name is not None else element
    if target is None or target.text is None:
        return default
    return target.text.strip()


def attribute(element: etree._Element, name: str, default: str = "") -> str:
    """Attribute value looked up by local name."""
    for key, value in element.attrib.items():
        if etree.QName(key).localname == name:
            return value.strip()
    return default


def parse_number(value: Optional[str]) -> float:
    """
    Parse a decimal from a document value.

    Accepts comma separators and embedded spaces ("1 234,50").
    Returns 0.0 for empty or unparseable values.
    """
    if not value:
        return 0.0
    cleaned = value.replace("\xa0", "").replace(" ", "").replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def requisites(element: etree._Element) -> Iterator[tuple[str, str]]:
    """(name, value) pairs from ЗначенияРеквизитов/ЗначениеРеквизита."""
    for requisite in children(child(element, "ЗначенияРеквизитов"), "ЗначениеРеквизита"):
        yield text(requisite, "Наименование"), text(requisite, "Значение")
