"""
NFCom Submission Core

Version: 0.1.0

Signs NFCom (Nota Fiscal Fatura de Serviços de Comunicação) documents
with an enveloped XML signature, compresses and encodes them, submits
them to the tax authority over SOAP 1.2 with mutual TLS, and interprets
the authority's reply, retrying while the service is temporarily
unavailable.

A submission ends in exactly one of:
    Authorized   protocol number, timestamp and confirmed document
    Denied       use of the document denied, or cancelled/historical state
    Rejected     validation failure
or raises an NFComError (configuration, certificate, structure, protocol,
or a transient failure that outlived its retry budget).

Usage:
    from nfcom import (
        EndpointConfig,
        SubmissionOrchestrator,
        load_credential,
        Authorized,
    )

    config = EndpointConfig.from_env()
    credential = load_credential("certificado.pfx", "senha")

    orchestrator = SubmissionOrchestrator(config)
    outcome = orchestrator.submit(open("nfcom.xml").read(), credential)

    if isinstance(outcome, Authorized):
        save(outcome.confirmed_document)
    else:
        print(outcome.code, outcome.reason)
"""

__version__ = "0.1.0"

# Errors
from .errors import (
    NFComError,
    ConfigurationError,
    CertificateError,
    StructuralError,
    TimeoutError,
    TransientServiceError,
    ProtocolFault,
    SubmissionCancelled,
    is_transient,
)

# Configuration
from .config import (
    Environment,
    Service,
    EndpointConfig,
    STATE_CODES,
)

# Credentials
from .credentials import (
    Credential,
    CredentialProvider,
    BundleCredentialProvider,
    load_credential,
)

# Canonicalization and signing
from .canonicalization import canonicalize, canonicalize_str, parse_xml
from .signing import (
    SignedDocument,
    XmlSigner,
    sign_document,
    verify_signature,
)

# Transport encoding
from .transport import normalize, encode, decode, encode_xml, decode_xml

# SOAP
from .soap import (
    EnvelopeShape,
    SoapOperation,
    SoapRequest,
    SoapClient,
    build_envelope,
)

# Outcomes and response interpretation
from .outcomes import (
    OutcomeKind,
    Authorized,
    Denied,
    Rejected,
    TransientFailure,
    SubmissionOutcome,
)
from .response import (
    ResponseInterpreter,
    ServiceStatus,
    QueryResult,
    InutilizationResult,
    Situation,
    build_confirmed_document,
)

# Orchestration
from .orchestrator import Submission, SubmissionOrchestrator, SubmissionState

# Access key
from .access_key import (
    build_access_key,
    compute_check_digit,
    is_valid_access_key,
    portal_url,
)

# Logging
from .logging_config import configure_logging, audit_log

__all__ = [
    # Version
    "__version__",

    # Errors
    "NFComError",
    "ConfigurationError",
    "CertificateError",
    "StructuralError",
    "TimeoutError",
    "TransientServiceError",
    "ProtocolFault",
    "SubmissionCancelled",
    "is_transient",

    # Configuration
    "Environment",
    "Service",
    "EndpointConfig",
    "STATE_CODES",

    # Credentials
    "Credential",
    "CredentialProvider",
    "BundleCredentialProvider",
    "load_credential",

    # Canonicalization and signing
    "canonicalize",
    "canonicalize_str",
    "parse_xml",
    "SignedDocument",
    "XmlSigner",
    "sign_document",
    "verify_signature",

    # Transport encoding
    "normalize",
    "encode",
    "decode",
    "encode_xml",
    "decode_xml",

    # SOAP
    "EnvelopeShape",
    "SoapOperation",
    "SoapRequest",
    "SoapClient",
    "build_envelope",

    # Outcomes
    "OutcomeKind",
    "Authorized",
    "Denied",
    "Rejected",
    "TransientFailure",
    "SubmissionOutcome",
    "ResponseInterpreter",
    "ServiceStatus",
    "QueryResult",
    "InutilizationResult",
    "Situation",
    "build_confirmed_document",

    # Orchestration
    "Submission",
    "SubmissionOrchestrator",
    "SubmissionState",

    # Access key
    "build_access_key",
    "compute_check_digit",
    "is_valid_access_key",
    "portal_url",

    # Logging
    "configure_logging",
    "audit_log",
]
