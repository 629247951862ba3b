"""
NFCom Error Taxonomy

Every failure the submission pipeline can raise derives from NFComError.

Transient (retried by the orchestrator, bounded):
    TimeoutError, TransientServiceError

Fatal (propagated immediately):
    ConfigurationError, CertificateError, StructuralError, ProtocolFault,
    SubmissionCancelled

Denied and Rejected outcomes are not errors. They are returned to the
caller as values (see nfcom.outcomes).
"""

import builtins
from typing import Any, Dict, Optional


class NFComError(Exception):
    """Base class for all NFCom errors."""

    transient = False

    def __init__(
        self,
        message: str,
        status_code: Optional[str] = None,
        reason: Optional[str] = None,
        raw_response: Optional[bytes] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.reason = reason
        self.raw_response = raw_response
        self.attempts: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "status_code": self.status_code,
            "reason": self.reason,
            "attempts": self.attempts,
            "transient": self.transient,
        }


class ConfigurationError(NFComError):
    """Missing or invalid endpoint/credential configuration."""


class CertificateError(NFComError):
    """Bad, expired or mismatched credential, or unusable signing key."""


class StructuralError(NFComError):
    """Missing signature target or malformed XML (request or response)."""


class TimeoutError(NFComError, builtins.TimeoutError):
    """Connect or read timeout talking to the authority."""

    transient = True


class TransientServiceError(NFComError):
    """Authority signaled it is temporarily unavailable (HTTP 503 or status code)."""

    transient = True


class ProtocolFault(NFComError):
    """SOAP fault, TLS failure or unexpected HTTP status."""


class SubmissionCancelled(NFComError):
    """Submission aborted by the caller before a retry was sent."""


def is_transient(error: BaseException) -> bool:
    """Whether the orchestrator may retry after this error."""
    return isinstance(error, NFComError) and error.transient
