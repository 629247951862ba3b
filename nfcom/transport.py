"""
Transport encoding for NFCom payloads.

The reception endpoint rejects formatted documents and expects the signed
XML gzip-compressed (maximum ratio) and base64-encoded on a single line.
"""

import base64
import binascii
import gzip
import re
import zlib
from typing import Union

from .errors import StructuralError

_BOMS = (b"\xef\xbb\xbf", b"\xff\xfe", b"\xfe\xff")

# C0 controls except tab, newline and carriage return, plus DEL
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
# leading whitespace, U+FEFF and declarations, in any order
_PROLOG_RE = re.compile(r"\A(?:[\s\ufeff]+|<\?xml[^?]*\?>)+")
_LEADING_BLANKS_RE = re.compile(r"^[ \t]+", re.MULTILINE)
_TRAILING_BLANKS_RE = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_LINES_RE = re.compile(r"\n\n+")
_INTER_TAG_RE = re.compile(r">\s+<")

COMPRESSION_LEVEL = 9


def normalize(xml: Union[str, bytes]) -> str:
    """
    Strip formatting noise from an XML document.

    Removes byte-order marks, the XML declaration, carriage returns,
    per-line indentation, blank lines, whitespace between tags and
    control characters. Idempotent.
    """
    if isinstance(xml, bytes):
        for bom in _BOMS:
            if xml.startswith(bom):
                xml = xml[len(bom):]
                break
        xml = xml.decode("utf-8")

    xml = _CONTROL_CHARS_RE.sub("", xml)
    xml = xml.replace("\r", "")
    xml = _PROLOG_RE.sub("", xml)
    xml = _LEADING_BLANKS_RE.sub("", xml)
    xml = _TRAILING_BLANKS_RE.sub("", xml)
    xml = _BLANK_LINES_RE.sub("\n", xml)
    xml = _INTER_TAG_RE.sub("><", xml)
    return xml.strip()


def encode(data: Union[bytes, str]) -> str:
    """
    Gzip (level 9) then base64 without line breaks.

    The gzip header timestamp is fixed so equal input gives equal output.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    compressed = gzip.compress(data, compresslevel=COMPRESSION_LEVEL, mtime=0)
    return base64.b64encode(compressed).decode("ascii")


def decode(payload: Union[str, bytes]) -> bytes:
    """
    Inverse of encode().

    Raises:
        StructuralError: payload is not valid base64 or not gzip data
    """
    try:
        if isinstance(payload, str):
            payload = payload.encode("ascii")
        compressed = base64.b64decode(b"".join(payload.split()), validate=True)
        return gzip.decompress(compressed)
    except (binascii.Error, UnicodeEncodeError, OSError, EOFError, zlib.error) as e:
        raise StructuralError(f"Invalid compressed payload: {e}") from e


def encode_xml(xml: Union[str, bytes]) -> str:
    """Normalize, compress and encode an XML document for transport."""
    return encode(normalize(xml))


def decode_xml(payload: Union[str, bytes]) -> str:
    """Decode a transported payload back to XML text."""
    return decode(payload).decode("utf-8")
