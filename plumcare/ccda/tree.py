"""
CDA XML Tree

Reduces a CDA document to a minimal element tree: tag name (namespace
stripped), attribute map, ordered children and accumulated inline text.
Lookups are by local tag name only, which is all the C-CDA transforms need.

Parsing goes through defusedxml so documents from outside the trust
boundary cannot trigger entity-expansion or external-entity attacks.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional
from xml.etree.ElementTree import Element

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeET
from defusedxml.ElementTree import ParseError
from loguru import logger

from plumcare.errors import require_str

_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>", re.IGNORECASE)
_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)


@dataclass
class CdaElement:
    """One XML element."""
    tag: str
    attrs: Dict[str, str] = field(default_factory=dict)
    children: List["CdaElement"] = field(default_factory=list)
    text: str = ""

    def iter(self) -> Iterator["CdaElement"]:
        """Depth-first, document-order walk including this element."""
        yield self
        for child in self.children:
            yield from child.iter()


def _local_name(name: str) -> str:
    if name.startswith("{"):
        name = name.split("}", 1)[1]
    return name.split(":", 1)[-1]


def _convert(element: Element) -> CdaElement:
    text_parts = [element.text or ""]
    converted = []
    for sub in element:
        converted.append(_convert(sub))
        text_parts.append(sub.tail or "")
    return CdaElement(
        tag=_local_name(element.tag),
        attrs={_local_name(k): v for k, v in element.attrib.items()},
        children=converted,
        text="".join(text_parts).strip(),
    )


def parse_cda(xml: str) -> Optional[CdaElement]:
    """
    Parse a CDA document string.

    Args:
        xml: Full document text

    Returns:
        Root element, or None if the text is not well-formed XML

    Raises:
        CallerContractViolation: If xml is not a string
    """
    require_str(xml, "CDA document")
    cleaned = _COMMENT.sub("", _XML_DECLARATION.sub("", xml, count=1)).strip()
    if not cleaned:
        logger.warning("Empty CDA document")
        return None
    try:
        root = SafeET.fromstring(cleaned)
    except (ParseError, DefusedXmlException) as e:
        logger.warning("Could not parse CDA document: {}", e)
        return None
    return _convert(root)


def find_all(root: Optional[CdaElement], tag: str) -> List[CdaElement]:
    """Every element named tag under root (root included), depth-first."""
    if root is None:
        return []
    return [element for element in root.iter() if element.tag == tag]


def find_first(root: Optional[CdaElement], tag: str) -> Optional[CdaElement]:
    """First element named tag under root, or None."""
    if root is None:
        return None
    for element in root.iter():
        if element.tag == tag:
            return element
    return None


def child(element: Optional[CdaElement], tag: str) -> Optional[CdaElement]:
    """First direct child named tag, or None."""
    if element is None:
        return None
    for candidate in element.children:
        if candidate.tag == tag:
            return candidate
    return None


def children(element: Optional[CdaElement], tag: str) -> List[CdaElement]:
    """Direct children named tag."""
    if element is None:
        return []
    return [candidate for candidate in element.children if candidate.tag == tag]


def path(element: Optional[CdaElement], *tags: str) -> Optional[CdaElement]:
    """Follow a chain of direct children, e.g. ``path(doc, "recordTarget", "patientRole")``."""
    for tag in tags:
        element = child(element, tag)
    return element


def attr(element: Optional[CdaElement], name: str) -> str:
    """Attribute value, or "" if the element or attribute is missing."""
    if element is None:
        return ""
    return element.attrs.get(name, "")


def text(element: Optional[CdaElement]) -> str:
    """Inline text of an element, or "" if it is missing."""
    if element is None:
        return ""
    return element.text


def find_section(root: Optional[CdaElement], loinc_code: str) -> Optional[CdaElement]:
    """
    The ``<section>`` whose own ``<code>`` carries loinc_code.

    Returns:
        The section, or None if the document has no such section
    """
    for section in find_all(root, "section"):
        if attr(child(section, "code"), "code") == loinc_code:
            return section
    return None
