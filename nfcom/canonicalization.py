"""
XML Canonicalization (C14N 1.0)

Produces the exact byte form the authority digests and signs:
- Attributes in canonical order, namespace declarations made explicit
- No XML declaration, empty elements expanded to start/end tag pairs
- Ignorable inter-element whitespace dropped at parse time

Canonicalizing the same input twice always yields identical bytes.
"""

from typing import Union

from lxml import etree

from .errors import StructuralError

XmlInput = Union[str, bytes, etree._Element, etree._ElementTree]


def xml_parser() -> etree.XMLParser:
    """Parser used for every document that will be signed or digested."""
    return etree.XMLParser(
        remove_blank_text=True,
        resolve_entities=False,
        no_network=True,
        huge_tree=False,
    )


def parse_xml(data: Union[str, bytes]) -> etree._Element:
    """
    Parse XML text into an element, dropping ignorable whitespace.

    Raises:
        StructuralError: if the text is not well-formed XML
    """
    if isinstance(data, str):
        # lxml refuses str input that carries an encoding declaration
        data = data.encode("utf-8")
    try:
        return etree.fromstring(data, parser=xml_parser())
    except etree.XMLSyntaxError as e:
        raise StructuralError(f"Malformed XML: {e}") from e


def as_element(document: XmlInput) -> etree._Element:
    """Return the root element of any accepted XML input."""
    if isinstance(document, etree._ElementTree):
        return document.getroot()
    if isinstance(document, etree._Element):
        return document
    return parse_xml(document)


def canonicalize(node: XmlInput) -> bytes:
    """
    Canonicalize an element (and its subtree) with inclusive C14N 1.0.

    Namespaces in scope from ancestors are rendered on the apex element,
    so a subtree canonicalizes identically inside or outside its document.
    """
    element = as_element(node)
    return etree.tostring(element, method="c14n", exclusive=False, with_comments=False)


def canonicalize_str(node: XmlInput) -> str:
    """Return canonical XML as a string."""
    return canonicalize(node).decode("utf-8")
