"""
Submission outcomes.

One outcome is produced per attempt by the ResponseInterpreter:

    Authorized        - document accepted, protocol issued (terminal)
    Denied            - use of the document denied or historical state (terminal)
    Rejected          - validation failure or unknown code (terminal)
    TransientFailure  - authority temporarily unavailable (retryable)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from .errors import NFComError, TransientServiceError


class OutcomeKind(str, Enum):
    """Tag of a submission outcome."""
    AUTHORIZED = "AUTHORIZED"
    DENIED = "DENIED"
    REJECTED = "REJECTED"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"


@dataclass(frozen=True)
class Authorized:
    """Document authorized; carries the authority protocol block."""
    code: str
    reason: str
    protocol_number: str
    authority_timestamp: str
    access_key: str
    confirmed_document: Optional[str] = None
    protocol_xml: Optional[str] = None
    kind: OutcomeKind = field(default=OutcomeKind.AUTHORIZED, init=False)

    def is_terminal(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "reason": self.reason,
            "protocol_number": self.protocol_number,
            "authority_timestamp": self.authority_timestamp,
            "access_key": self.access_key,
        }


@dataclass(frozen=True)
class Denied:
    code: str
    reason: str
    kind: OutcomeKind = field(default=OutcomeKind.DENIED, init=False)

    def is_terminal(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "code": self.code, "reason": self.reason}


@dataclass(frozen=True)
class Rejected:
    code: str
    reason: str
    kind: OutcomeKind = field(default=OutcomeKind.REJECTED, init=False)

    def is_terminal(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "code": self.code, "reason": self.reason}


@dataclass(frozen=True)
class TransientFailure:
    """
    Authority temporarily unavailable.

    `code` is the authority status code when the signal came in a response
    body; `error` is the transport exception when it came from the client.
    """
    reason: str
    code: Optional[str] = None
    error: Optional[NFComError] = None
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    kind: OutcomeKind = field(default=OutcomeKind.TRANSIENT_FAILURE, init=False)

    def is_terminal(self) -> bool:
        return False

    def to_error(self, attempts: int) -> NFComError:
        """The error to surface once retries are exhausted."""
        error = self.error
        if error is None:
            error = TransientServiceError(
                f"Authority unavailable: {self.reason}",
                status_code=self.code,
                reason=self.reason,
            )
        error.attempts = attempts
        return error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "reason": self.reason,
            "observed_at": self.observed_at.isoformat().replace("+00:00", "Z"),
        }


SubmissionOutcome = Union[Authorized, Denied, Rejected, TransientFailure]
