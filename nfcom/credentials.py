"""
Credential management for NFCom.

A Credential is the RSA signing key plus the ICP-Brasil certificate used
both for the XML signature and for TLS client authentication. It is
validated once at construction and is immutable afterwards, so one
instance can be shared by concurrent submissions.
"""

import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from .errors import CertificateError

logger = logging.getLogger(__name__)

EXPIRY_WARNING_DAYS = 30

_PEM_BLOCK_RE = re.compile(
    rb"-----BEGIN ([A-Z0-9 ]+)-----.*?-----END \1-----",
    re.DOTALL,
)
_CNPJ_RE = re.compile(r"(\d{14})")


@dataclass(frozen=True)
class Credential:
    """
    Signing key + certificate.

    Raises CertificateError on construction if the key does not belong to
    the certificate or the certificate is outside its validity window.
    """
    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    chain: Tuple[x509.Certificate, ...] = field(default=())

    def __post_init__(self):
        if not isinstance(self.private_key, rsa.RSAPrivateKey):
            raise CertificateError("Signing key must be an RSA private key")
        if not _key_matches_certificate(self.private_key, self.certificate):
            raise CertificateError("Private key does not match the certificate")
        self.check_validity()

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def identity(self) -> Optional[str]:
        """CNPJ of the certificate owner, taken from the subject."""
        names = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        candidates = [str(n.value) for n in names] + [self.certificate.subject.rfc4514_string()]
        for candidate in candidates:
            match = _CNPJ_RE.search(candidate)
            if match:
                return match.group(1)
        return None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now > self.not_after

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.not_before <= now <= self.not_after

    def days_until_expiry(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        if self.is_expired(now):
            return 0
        return (self.not_after - now).days

    def check_validity(self, now: Optional[datetime] = None) -> None:
        """Raise CertificateError unless the certificate is currently valid."""
        now = now or datetime.now(timezone.utc)
        if now > self.not_after:
            raise CertificateError(
                f"Certificate expired at {self.not_after.isoformat()}"
            )
        if now < self.not_before:
            raise CertificateError(
                f"Certificate not valid before {self.not_before.isoformat()}"
            )

    def sign(self, data: bytes) -> bytes:
        """RSA PKCS#1 v1.5 signature with SHA-1, as the authority mandates."""
        try:
            return self.private_key.sign(data, padding.PKCS1v15(), hashes.SHA1())
        except (ValueError, TypeError) as e:
            raise CertificateError(f"Signing failed: {e}") from e

    def certificate_der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)

    def certificate_pem(self) -> bytes:
        pem = self.certificate.public_bytes(serialization.Encoding.PEM)
        for extra in self.chain:
            pem += extra.public_bytes(serialization.Encoding.PEM)
        return pem

    def private_key_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    @contextmanager
    def pem_files(self) -> Iterator[Tuple[str, str]]:
        """
        Write certificate and key to private temporary PEM files.

        Yields (cert_path, key_path) for TLS client authentication; both
        files are removed on exit.
        """
        paths: List[str] = []
        try:
            for suffix, content in (("-cert.pem", self.certificate_pem()), ("-key.pem", self.private_key_pem())):
                fd, path = tempfile.mkstemp(prefix="nfcom-", suffix=suffix)
                paths.append(path)
                with os.fdopen(fd, "wb") as f:
                    f.write(content)
            yield paths[0], paths[1]
        finally:
            for path in paths:
                try:
                    os.unlink(path)
                except FileNotFoundError:
                    pass


def _key_matches_certificate(key: rsa.RSAPrivateKey, cert: x509.Certificate) -> bool:
    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    enc = serialization.Encoding.DER
    return key.public_key().public_bytes(enc, fmt) == cert.public_key().public_bytes(enc, fmt)


# ============================================================
# Providers
# ============================================================

class CredentialProvider(ABC):
    """Interface for loading a Credential."""

    @abstractmethod
    def load(
        self,
        source: Union[str, Path, bytes],
        passphrase: Optional[Union[str, bytes]] = None,
    ) -> Credential:
        """
        Load a credential from a path or raw bundle bytes.

        Raises:
            CertificateError: unreadable, wrong passphrase, mismatched or expired
        """
        pass


class BundleCredentialProvider(CredentialProvider):
    """
    Loads PKCS#12 (.pfx/.p12) bundles and PEM files holding key + certificate.

    The format is detected from the content (PEM armor or not), never
    from the file name.
    """

    def load(
        self,
        source: Union[str, Path, bytes],
        passphrase: Optional[Union[str, bytes]] = None,
    ) -> Credential:
        data = self._read(source)
        password = passphrase.encode("utf-8") if isinstance(passphrase, str) else passphrase

        if b"-----BEGIN" in data:
            key, cert, chain = self._load_pem(data, password)
        else:
            key, cert, chain = self._load_pkcs12(data, password)

        credential = Credential(private_key=key, certificate=cert, chain=tuple(chain))

        days_left = credential.days_until_expiry()
        if days_left <= EXPIRY_WARNING_DAYS:
            logger.warning("Certificate for %s expires in %d days", credential.identity, days_left)

        return credential

    @staticmethod
    def _read(source: Union[str, Path, bytes]) -> bytes:
        if isinstance(source, bytes):
            return source
        path = Path(source)
        if not path.is_file():
            raise CertificateError(f"Certificate file not found: {path}")
        return path.read_bytes()

    @staticmethod
    def _load_pkcs12(data: bytes, password: Optional[bytes]):
        try:
            key, cert, additional = pkcs12.load_key_and_certificates(data, password)
        except ValueError as e:
            raise CertificateError(f"Could not load PKCS#12 bundle (wrong passphrase?): {e}") from e
        if cert is None:
            raise CertificateError("PKCS#12 bundle has no certificate")
        if key is None:
            raise CertificateError("PKCS#12 bundle has no private key")
        return key, cert, list(additional or [])

    @staticmethod
    def _load_pem(data: bytes, password: Optional[bytes]):
        certs = []
        key = None
        for match in _PEM_BLOCK_RE.finditer(data):
            label = match.group(1)
            block = match.group(0)
            try:
                if label == b"CERTIFICATE":
                    certs.append(x509.load_pem_x509_certificate(block))
                elif label.endswith(b"PRIVATE KEY") and key is None:
                    key = serialization.load_pem_private_key(block, password=password)
            except (ValueError, TypeError) as e:
                raise CertificateError(f"Could not load PEM {label.decode()}: {e}") from e

        if not certs:
            raise CertificateError("PEM data has no certificate")
        if key is None:
            raise CertificateError("PEM data has no private key")

        # Leaf is the certificate belonging to the key
        leaf = next((c for c in certs if _key_matches_certificate(key, c)), certs[0])
        chain = [c for c in certs if c is not leaf]
        return key, leaf, chain


def load_credential(
    source: Union[str, Path, bytes],
    passphrase: Optional[Union[str, bytes]] = None,
) -> Credential:
    """Load a credential with the default bundle provider."""
    return BundleCredentialProvider().load(source, passphrase)
