"""
NFCom XML Signature

Enveloped XMLDSig over the infNFCom element, using the fixed algorithm set
the authority accepts:

    CanonicalizationMethod  C14N 1.0
    SignatureMethod         RSA-SHA1
    DigestMethod            SHA-1
    Transforms              enveloped-signature, C14N 1.0

The Signature element is appended as the last child of the document root.
"""

import base64
import hashlib
from dataclasses import dataclass
from typing import List, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from lxml import etree

from .canonicalization import XmlInput, as_element, canonicalize, parse_xml
from .credentials import Credential
from .errors import StructuralError

NFCOM_NS = "http://www.portalfiscal.inf.br/nfcom"
DSIG_NS = "http://www.w3.org/2000/09/xmldsig#"

C14N_ALGORITHM = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
SIGNATURE_ALGORITHM = "http://www.w3.org/2000/09/xmldsig#rsa-sha1"
DIGEST_ALGORITHM = "http://www.w3.org/2000/09/xmldsig#sha1"
ENVELOPED_TRANSFORM = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"

DEFAULT_TARGET_TAG = f"{{{NFCOM_NS}}}infNFCom"
ID_ATTRIBUTE = "Id"


def _ds(tag: str) -> str:
    return f"{{{DSIG_NS}}}{tag}"


def b64e(data: bytes) -> str:
    """Base64 without line wrapping."""
    return base64.b64encode(data).decode("ascii")


def sha1_digest(data: bytes) -> str:
    """Base64 SHA-1 digest, the DigestValue format."""
    return b64e(hashlib.sha1(data).digest())


@dataclass(frozen=True)
class SignedDocument:
    """A signed document and the values that went into its signature."""
    xml: str
    reference_id: str
    digest_value: str
    signature_value: str

    @property
    def reference_uri(self) -> str:
        return f"#{self.reference_id}"

    def element(self) -> etree._Element:
        return parse_xml(self.xml)

    def __str__(self) -> str:
        return self.xml


class XmlSigner:
    """
    Signs the element carrying the reference identifier.

    target_tag selects the element to sign (Clark notation). With
    target_tag=None the single element carrying an Id attribute is signed.
    """

    def __init__(self, target_tag: Optional[str] = DEFAULT_TARGET_TAG, id_attribute: str = ID_ATTRIBUTE):
        self.target_tag = target_tag
        self.id_attribute = id_attribute

    def find_target(self, root: etree._Element) -> etree._Element:
        """
        Locate the reference target.

        Raises:
            StructuralError: target missing, ambiguous, or with an empty
                or non-unique identifier
        """
        identified = [el for el in root.iter() if el.get(self.id_attribute) is not None]
        ids = [el.get(self.id_attribute) for el in identified]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise StructuralError(f"Duplicate {self.id_attribute} values: {', '.join(duplicates)}")

        if self.target_tag is None:
            candidates = identified
        else:
            candidates = [el for el in root.iter(self.target_tag)]

        if not candidates:
            raise StructuralError(f"Signature target {self.target_tag or self.id_attribute} not found")
        if len(candidates) > 1:
            raise StructuralError(f"Signature target {self.target_tag or self.id_attribute} is ambiguous")

        target = candidates[0]
        reference_id = target.get(self.id_attribute)
        if not reference_id:
            raise StructuralError(f"Signature target has an empty {self.id_attribute} attribute")
        return target

    def sign(self, document: XmlInput, credential: Credential) -> SignedDocument:
        """
        Sign a document.

        The input is not modified; string and bytes input is parsed with
        ignorable whitespace dropped so the signature survives transport
        normalization.

        Raises:
            StructuralError: missing target or already signed
            CertificateError: the key cannot produce a signature
        """
        root = as_element(document)
        if isinstance(document, (etree._Element, etree._ElementTree)):
            # Work on a copy that keeps the caller's tree intact
            root = parse_xml(etree.tostring(root))

        if root.find(_ds("Signature")) is not None:
            raise StructuralError("Document is already signed")

        target = self.find_target(root)
        reference_id = target.get(self.id_attribute)

        digest_value = sha1_digest(canonicalize(target))

        signature = etree.SubElement(root, _ds("Signature"), nsmap={None: DSIG_NS})
        signed_info = build_signed_info(signature, f"#{reference_id}", digest_value)
        signature_value_el = etree.SubElement(signature, _ds("SignatureValue"))
        key_info = etree.SubElement(signature, _ds("KeyInfo"))
        x509_data = etree.SubElement(key_info, _ds("X509Data"))
        etree.SubElement(x509_data, _ds("X509Certificate")).text = b64e(credential.certificate_der())

        # SignedInfo is canonicalized in its final position so inherited
        # namespaces match what a verifier sees.
        signature_value = b64e(credential.sign(canonicalize(signed_info)))
        signature_value_el.text = signature_value

        return SignedDocument(
            xml=etree.tostring(root, encoding="unicode"),
            reference_id=reference_id,
            digest_value=digest_value,
            signature_value=signature_value,
        )


def build_signed_info(parent: etree._Element, reference_uri: str, digest_value: str) -> etree._Element:
    """Append a SignedInfo with the fixed algorithm URIs to parent."""
    signed_info = etree.SubElement(parent, _ds("SignedInfo"))
    etree.SubElement(signed_info, _ds("CanonicalizationMethod"), Algorithm=C14N_ALGORITHM)
    etree.SubElement(signed_info, _ds("SignatureMethod"), Algorithm=SIGNATURE_ALGORITHM)

    reference = etree.SubElement(signed_info, _ds("Reference"), URI=reference_uri)
    transforms = etree.SubElement(reference, _ds("Transforms"))
    etree.SubElement(transforms, _ds("Transform"), Algorithm=ENVELOPED_TRANSFORM)
    etree.SubElement(transforms, _ds("Transform"), Algorithm=C14N_ALGORITHM)
    etree.SubElement(reference, _ds("DigestMethod"), Algorithm=DIGEST_ALGORITHM)
    etree.SubElement(reference, _ds("DigestValue")).text = digest_value
    return signed_info


def sign_document(document: XmlInput, credential: Credential) -> SignedDocument:
    """Sign the infNFCom element of an NFCom document."""
    return XmlSigner().sign(document, credential)


def _algorithms(signed_info: etree._Element) -> List[Optional[str]]:
    paths = (
        _ds("CanonicalizationMethod"),
        _ds("SignatureMethod"),
        f"{_ds('Reference')}/{_ds('DigestMethod')}",
    )
    found = [signed_info.find(path) for path in paths]
    return [el.get("Algorithm") if el is not None else None for el in found]


def verify_signature(signed_xml: XmlInput, certificate: Optional[x509.Certificate] = None) -> bool:
    """
    Verify an enveloped signature produced by XmlSigner.

    Checks the algorithm URIs, recomputes the reference digest with the
    signature removed, and verifies the signature value against the
    supplied certificate or the one embedded in KeyInfo.
    """
    root = parse_xml(etree.tostring(as_element(signed_xml)))
    signature = root.find(_ds("Signature"))
    if signature is None:
        return False
    signed_info = signature.find(_ds("SignedInfo"))
    if signed_info is None:
        return False

    if _algorithms(signed_info) != [C14N_ALGORITHM, SIGNATURE_ALGORITHM, DIGEST_ALGORITHM]:
        return False

    reference = signed_info.find(_ds("Reference"))
    uri = reference.get("URI", "") if reference is not None else ""
    if not uri.startswith("#"):
        return False

    try:
        signature_value = base64.b64decode(signature.findtext(_ds("SignatureValue")) or "")
        if certificate is None:
            cert_b64 = signature.findtext(f"{_ds('KeyInfo')}/{_ds('X509Data')}/{_ds('X509Certificate')}")
            certificate = x509.load_der_x509_certificate(base64.b64decode(cert_b64 or ""))
    except ValueError:
        return False

    signed_info_c14n = canonicalize(signed_info)

    # Enveloped-signature transform
    root.remove(signature)
    targets = [el for el in root.iter() if el.get(ID_ATTRIBUTE) == uri[1:]]
    if len(targets) != 1:
        return False
    if sha1_digest(canonicalize(targets[0])) != reference.findtext(_ds("DigestValue")):
        return False

    try:
        certificate.public_key().verify(signature_value, signed_info_c14n, padding.PKCS1v15(), hashes.SHA1())
    except InvalidSignature:
        return False
    return True
