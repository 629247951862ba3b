"""
NFCom access key (chave de acesso).

44 numeric digits:

    cUF(2) AAMM(4) CNPJ(14) mod(2) serie(3) nNF(9) tpEmis(1) nSiteAutoriz(1) cNF(7) cDV(1)

The last digit is a mod-11 check digit over the first 43.
"""

import re
from typing import Optional
from urllib.parse import urlencode

from .canonicalization import XmlInput, as_element
from .config import Environment

ACCESS_KEY_LENGTH = 44
MODEL = "62"
WEIGHTS = (2, 3, 4, 5, 6, 7, 8, 9)
PORTAL_URL = "https://nfcom.svrs.rs.gov.br/nfcom/qrcode"
ID_PREFIX = "NFCom"

_DIGITS_RE = re.compile(r"^\d+$")


def compute_check_digit(prefix: str) -> int:
    """
    Mod-11 check digit.

    Digits are read right to left and multiplied by 2, 3, ... 9, cycling.
    The digit is 11 - (sum mod 11); 10 and 11 become 0.
    """
    if len(prefix) != ACCESS_KEY_LENGTH - 1 or not _DIGITS_RE.match(prefix):
        raise ValueError(f"Access key prefix must be {ACCESS_KEY_LENGTH - 1} digits")

    total = sum(int(digit) * WEIGHTS[i % len(WEIGHTS)] for i, digit in enumerate(reversed(prefix)))
    check = 11 - total % 11
    return 0 if check >= 10 else check


def is_valid_access_key(key: Optional[str]) -> bool:
    """True for a 44-digit key whose check digit matches."""
    if not key or len(key) != ACCESS_KEY_LENGTH or not _DIGITS_RE.match(key):
        return False
    return compute_check_digit(key[:-1]) == int(key[-1])


def build_access_key(
    state_code: str,
    year_month: str,
    cnpj: str,
    series: int,
    number: int,
    numeric_code: int,
    emission_type: int = 1,
    site: int = 0,
) -> str:
    """
    Assemble an access key and append its check digit.

    Args:
        state_code: two-digit IBGE state code (e.g. "26")
        year_month: emission date as YYMM
        cnpj: issuer CNPJ, punctuation allowed
        series: document series (up to 3 digits)
        number: document number (up to 9 digits)
        numeric_code: random code chosen by the issuer (up to 7 digits)
        emission_type: tpEmis (1 normal, 2 contingency)
        site: nSiteAutoriz
    """
    cnpj_digits = re.sub(r"\D", "", cnpj)
    parts = {
        "state_code": (str(state_code), 2),
        "year_month": (str(year_month), 4),
        "cnpj": (cnpj_digits, 14),
        "series": (str(series).rjust(3, "0"), 3),
        "number": (str(number).rjust(9, "0"), 9),
        "emission_type": (str(emission_type), 1),
        "site": (str(site), 1),
        "numeric_code": (str(numeric_code).rjust(7, "0"), 7),
    }
    for name, (value, width) in parts.items():
        if len(value) != width or not _DIGITS_RE.match(value):
            raise ValueError(f"{name} must be {width} digits, got {value!r}")

    v = {name: value for name, (value, _) in parts.items()}
    prefix = (
        v["state_code"] + v["year_month"] + v["cnpj"] + MODEL + v["series"]
        + v["number"] + v["emission_type"] + v["site"] + v["numeric_code"]
    )
    return prefix + str(compute_check_digit(prefix))


def portal_url(key: str, environment: Environment = Environment.HOMOLOGATION) -> str:
    """Public URL where a recipient can confirm the document."""
    if not is_valid_access_key(key):
        raise ValueError(f"Invalid access key: {key!r}")
    return f"{PORTAL_URL}?{urlencode({'chNFCom': key, 'tpAmb': environment.code})}"


def access_key_from_document(document: XmlInput) -> Optional[str]:
    """Access key taken from the infNFCom Id attribute (without the NFCom prefix)."""
    root = as_element(document)
    ids = root.xpath("//*[local-name()='infNFCom']/@Id")
    if not ids:
        return None
    value = str(ids[0])
    return value[len(ID_PREFIX):] if value.startswith(ID_PREFIX) else value
