"""
Shared test fixtures: throwaway RSA keys, self-signed certificates,
bundles in PKCS#12 and PEM form, sample documents and canned
authority responses.
"""

from datetime import datetime, timedelta, timezone
from functools import lru_cache

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from nfcom.credentials import Credential
from nfcom.transport import encode

CNPJ = "12345678000195"
PASSPHRASE = b"test-passphrase"

NFCOM_NS = "http://www.portalfiscal.inf.br/nfcom"
SOAP12_NS = "http://www.w3.org/2003/05/soap-envelope"
RECEPTION_NS = "http://www.portalfiscal.inf.br/nfcom/wsdl/NFComRecepcao"

ACCESS_KEY = "26240112345678000195620010000000011000000011"


@lru_cache(maxsize=None)
def rsa_key(name: str = "default") -> rsa.RSAPrivateKey:
    """One key per name, generated once per test run."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def make_certificate(
    key: rsa.RSAPrivateKey,
    common_name: str = f"EMPRESA TESTE LTDA:{CNPJ}",
    not_before_days: int = -1,
    not_after_days: int = 365,
) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "BR"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ICP-Brasil"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now + timedelta(days=not_before_days))
        .not_valid_after(now + timedelta(days=not_after_days))
        .sign(key, hashes.SHA256())
    )


def make_credential(**cert_kwargs) -> Credential:
    key = rsa_key()
    return Credential(private_key=key, certificate=make_certificate(key, **cert_kwargs))


def pkcs12_bundle(key=None, certificate=None, passphrase: bytes = PASSPHRASE) -> bytes:
    key = key or rsa_key()
    certificate = certificate or make_certificate(key)
    return pkcs12.serialize_key_and_certificates(
        b"nfcom-test",
        key,
        certificate,
        None,
        serialization.BestAvailableEncryption(passphrase),
    )


def pem_bundle(key=None, certificate=None) -> bytes:
    key = key or rsa_key()
    certificate = certificate or make_certificate(key)
    return certificate.public_bytes(serialization.Encoding.PEM) + key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


def sample_document(reference_id: str = f"NFCom{ACCESS_KEY}") -> str:
    return (
        f'<NFCom xmlns="{NFCOM_NS}">'
        f'<infNFCom Id="{reference_id}" versao="1.00">'
        "<ide><cUF>26</cUF><tpAmb>2</tpAmb><mod>62</mod><serie>1</serie><nNF>1</nNF></ide>"
        f"<emit><CNPJ>{CNPJ}</CNPJ><xNome>EMPRESA TESTE LTDA</xNome></emit>"
        "<total><vNF>100.00</vNF></total>"
        "</infNFCom>"
        "</NFCom>"
    )


# ============================================================
# Authority responses
# ============================================================

def ret_nfcom(code: str, reason: str, protocol: bool = False) -> str:
    prot = ""
    if protocol:
        prot = (
            '<protNFCom versao="1.00"><infProt>'
            "<tpAmb>2</tpAmb>"
            f"<chNFCom>{ACCESS_KEY}</chNFCom>"
            "<dhRecbto>2024-01-15T10:30:00-03:00</dhRecbto>"
            "<nProt>3262400000012345</nProt>"
            f"<cStat>{code}</cStat><xMotivo>{reason}</xMotivo>"
            "</infProt></protNFCom>"
        )
    return (
        f'<retNFCom xmlns="{NFCOM_NS}" versao="1.00">'
        "<tpAmb>2</tpAmb><cUF>26</cUF><verAplic>RS20240101</verAplic>"
        f"<cStat>{code}</cStat><xMotivo>{reason}</xMotivo>"
        f"{prot}"
        "</retNFCom>"
    )


def soap_response(result_content: str) -> bytes:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<soap:Envelope xmlns:soap="{SOAP12_NS}"><soap:Body>'
        f'<nfcomResultMsg xmlns="{RECEPTION_NS}">{result_content}</nfcomResultMsg>'
        "</soap:Body></soap:Envelope>"
    ).encode("utf-8")


def ret_inutilization(code: str = "102", reason: str = "Inutilizacao de numero homologado") -> str:
    return (
        f'<retInutNFCom xmlns="{NFCOM_NS}" versao="1.00"><infInut>'
        f"<tpAmb>2</tpAmb><cStat>{code}</cStat><xMotivo>{reason}</xMotivo>"
        "<cUF>26</cUF><ano>24</ano><nProt>326240000000099</nProt>"
        "<dhRecbto>2024-03-01T09:00:00-03:00</dhRecbto>"
        "</infInut></retInutNFCom>"
    )


def plain_response(code: str, reason: str, protocol: bool = False) -> bytes:
    return soap_response(ret_nfcom(code, reason, protocol))


def compressed_response(code: str, reason: str, protocol: bool = False) -> bytes:
    return soap_response(encode(ret_nfcom(code, reason, protocol)))


def fault_response(text: str = "Server was unable to read request") -> bytes:
    return (
        f'<soap:Envelope xmlns:soap="{SOAP12_NS}"><soap:Body><soap:Fault>'
        "<soap:Code><soap:Value>soap:Receiver</soap:Value></soap:Code>"
        f'<soap:Reason><soap:Text xml:lang="en">{text}</soap:Text></soap:Reason>'
        "</soap:Fault></soap:Body></soap:Envelope>"
    ).encode("utf-8")
