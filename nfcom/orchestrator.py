"""
NFCom Submission Orchestrator

Drives one logical submission through the state machine:

    BUILT -> SIGNED -> ENCODED -> SENT -> AUTHORIZED | DENIED | REJECTED | TRANSIENT_FAILURE

The document is signed and encoded exactly once. A TransientFailure
(including timeouts and HTTP 503 from the client) resends the same
envelope after sleeping backoff_base ** attempt seconds, until
max_attempts is reached; then the last transient failure is raised.
Every other outcome is returned as is, and every other error propagates.
"""

import logging
import threading
import time
from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from lxml import etree

from .access_key import MODEL
from .config import EndpointConfig, Service
from .credentials import Credential, EXPIRY_WARNING_DAYS
from .errors import ConfigurationError, NFComError, StructuralError, SubmissionCancelled, is_transient
from .logging_config import SubmissionLogger, audit_log, submission_scope
from .outcomes import SubmissionOutcome, TransientFailure
from .canonicalization import XmlInput
from .response import InutilizationResult, QueryResult, ResponseInterpreter, ServiceStatus
from .signing import NFCOM_NS, SignedDocument, XmlSigner
from .soap import INUTILIZATION, QUERY, RECEPTION, STATUS, SoapClient, SoapRequest, build_envelope
from .transport import encode_xml

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.00"

# Number-range voiding bounds
MIN_JUSTIFICATION = 15
MAX_JUSTIFICATION = 255
MAX_SERIES = 999
MAX_NUMBER = 999_999_999


class SubmissionState(str, Enum):
    BUILT = "BUILT"
    SIGNED = "SIGNED"
    ENCODED = "ENCODED"
    SENT = "SENT"
    AUTHORIZED = "AUTHORIZED"
    DENIED = "DENIED"
    REJECTED = "REJECTED"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"


@dataclass
class RetryState:
    """Attempt bookkeeping for one submission."""
    max_attempts: int
    backoff_base: float
    attempt: int = 0
    delays: List[float] = field(default_factory=list)

    def record_failure(self) -> None:
        self.attempt += 1

    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_delay(self) -> float:
        return self.backoff_base ** self.attempt


@dataclass
class Submission:
    """Trace of one submission. Pass one to submit() to inspect it afterwards."""
    state: SubmissionState = SubmissionState.BUILT
    signed: Optional[SignedDocument] = None
    envelope: Optional[bytes] = None
    retry: Optional[RetryState] = None
    outcomes: List[SubmissionOutcome] = field(default_factory=list)


class SubmissionOrchestrator:
    """
    Signs, encodes, sends and interprets NFCom submissions.

    Collaborators are injectable; `sleep` is only used when no cancellation
    event is passed to submit(). The orchestrator keeps no per-submission
    state, so one instance may serve concurrent submissions.
    """

    def __init__(
        self,
        config: EndpointConfig,
        client: Optional[SoapClient] = None,
        signer: Optional[XmlSigner] = None,
        interpreter: Optional[ResponseInterpreter] = None,
        sleep: Callable[[float], None] = time.sleep,
        audit: SubmissionLogger = audit_log,
    ):
        self.config = config
        self.client = client or SoapClient(config)
        self.signer = signer or XmlSigner()
        self.interpreter = interpreter or ResponseInterpreter()
        self.sleep = sleep
        self.audit = audit

    def submit(
        self,
        unsigned_document: XmlInput,
        credential: Credential,
        endpoint_config: Optional[EndpointConfig] = None,
        cancel: Optional[threading.Event] = None,
        trace: Optional[Submission] = None,
    ) -> SubmissionOutcome:
        """
        Submit a document for authorization.

        endpoint_config, when given, replaces the orchestrator's config for
        the reception URL and the retry policy of this call. Transport
        timeouts and TLS verification stay those of the client.

        trace, when given, is filled in as the submission progresses and
        stays with the caller whether the call returns or raises.

        Returns:
            Authorized, Denied or Rejected

        Raises:
            ConfigurationError: reception URL not configured
            CertificateError: credential no longer valid, or signing failed
            StructuralError: missing signature target or malformed response
            ProtocolFault: SOAP fault, TLS failure or unexpected HTTP status
            TimeoutError, TransientServiceError: retries exhausted (attempts set)
            SubmissionCancelled: cancel was set before a resend
        """
        config = endpoint_config or self.config
        url = config.url_for(Service.RECEPTION)
        self._check_credential(credential)

        submission = trace if trace is not None else Submission()
        submission.retry = RetryState(config.max_attempts, config.backoff_base)

        # BUILT -> SIGNED
        submission.signed = self.signer.sign(unsigned_document, credential)
        submission.state = SubmissionState.SIGNED

        with submission_scope(submission.signed.reference_id):
            self.audit.document_signed(submission.signed.reference_id, submission.signed.digest_value)

            # SIGNED -> ENCODED
            request = SoapRequest(operation=RECEPTION, text=encode_xml(submission.signed.xml))
            submission.envelope = build_envelope(request)
            submission.state = SubmissionState.ENCODED
            self.audit.submission_started(submission.signed.reference_id, url)

            return self._send_until_terminal(submission, request.action, credential, url, cancel)

    def _check_credential(self, credential: Credential) -> None:
        credential.check_validity()
        days_left = credential.days_until_expiry()
        if days_left <= EXPIRY_WARNING_DAYS:
            self.audit.certificate_expiring(credential.identity, days_left)

    def _send_until_terminal(self, submission, action, credential, url, cancel) -> SubmissionOutcome:
        retry = submission.retry
        while True:
            outcome = self._attempt(submission, action, credential, url, retry)
            submission.outcomes.append(outcome)
            submission.state = SubmissionState(outcome.kind.value)
            self.audit.outcome(outcome.kind.value, getattr(outcome, "code", None), outcome.reason)

            if outcome.is_terminal():
                return outcome

            retry.record_failure()
            if retry.exhausted():
                self.audit.retries_exhausted(retry.attempt, outcome.reason)
                raise outcome.to_error(retry.attempt)

            delay = retry.next_delay()
            if cancel is not None and cancel.is_set():
                raise SubmissionCancelled(f"Cancelled after attempt {retry.attempt}")
            self.audit.retry_scheduled(retry.attempt, delay, outcome.reason)
            retry.delays.append(delay)
            self._wait(delay, cancel)
            if cancel is not None and cancel.is_set():
                raise SubmissionCancelled(f"Cancelled while waiting to retry after attempt {retry.attempt}")

    def _attempt(self, submission, action, credential, url, retry) -> SubmissionOutcome:
        """Send the prepared envelope once and interpret the reply."""
        self.audit.attempt_sent(retry.attempt + 1, retry.max_attempts, len(submission.envelope))
        try:
            raw = self.client.send(submission.envelope, action, credential, url)
            submission.state = SubmissionState.SENT
            return self.interpreter.interpret(raw, submission.signed)
        except NFComError as e:
            if is_transient(e):
                return TransientFailure(reason=e.message, code=e.status_code, error=e)
            raise

    def _wait(self, delay: float, cancel: Optional[threading.Event]) -> None:
        if cancel is None:
            self.sleep(delay)
        else:
            cancel.wait(delay)

    # ------------------------------------------------------------
    # Single-attempt auxiliary services
    # ------------------------------------------------------------

    def service_status(self, credential: Credential) -> ServiceStatus:
        """Ask the authority whether the reception service is operating."""
        root = etree.Element(f"{{{NFCOM_NS}}}consStatServNFCom", nsmap={None: NFCOM_NS}, versao=SCHEMA_VERSION)
        etree.SubElement(root, f"{{{NFCOM_NS}}}tpAmb").text = str(self.config.environment.code)
        etree.SubElement(root, f"{{{NFCOM_NS}}}xServ").text = "STATUS"

        raw = self.client.call(
            SoapRequest(operation=STATUS, element=root),
            credential,
            self.config.url_for(Service.STATUS),
        )
        return self.interpreter.interpret_status(raw)

    def query(self, access_key: str, credential: Credential) -> QueryResult:
        """Query the situation of a previously submitted document."""
        root = etree.Element(f"{{{NFCOM_NS}}}consSitNFCom", nsmap={None: NFCOM_NS}, versao=SCHEMA_VERSION)
        etree.SubElement(root, f"{{{NFCOM_NS}}}tpAmb").text = str(self.config.environment.code)
        etree.SubElement(root, f"{{{NFCOM_NS}}}chNFCom").text = access_key

        raw = self.client.call(
            SoapRequest(operation=QUERY, element=root),
            credential,
            self.config.url_for(Service.QUERY),
        )
        return self.interpreter.interpret_query(raw)

    def void_range(
        self,
        series: int,
        first: int,
        last: int,
        justification: str,
        credential: Credential,
        cnpj: Optional[str] = None,
        year: Optional[int] = None,
    ) -> InutilizationResult:
        """
        Void (inutilize) a range of unused document numbers in a series.

        cnpj defaults to the one in the certificate subject, year to the
        current year. The request is signed over infInut and sent once.

        Raises:
            StructuralError: justification or range out of bounds
            ConfigurationError: no inutilization URL, or no issuer CNPJ
        """
        justification = " ".join(justification.split())
        if not MIN_JUSTIFICATION <= len(justification) <= MAX_JUSTIFICATION:
            raise StructuralError(
                f"Justification must have {MIN_JUSTIFICATION} to {MAX_JUSTIFICATION} characters"
            )
        if not 0 <= series <= MAX_SERIES:
            raise StructuralError(f"Series out of range: {series}")
        if not 1 <= first <= last <= MAX_NUMBER:
            raise StructuralError(f"Invalid number range: {first}..{last}")

        url = self.config.url_for(Service.INUTILIZATION)
        cnpj = "".join(ch for ch in (cnpj or credential.identity or "") if ch.isdigit())
        if len(cnpj) != 14:
            raise ConfigurationError("Issuer CNPJ not given and not found in the certificate")
        self._check_credential(credential)

        year_digits = f"{(year if year is not None else datetime.now().year) % 100:02d}"
        state_code = self.config.state_code
        inut_id = f"ID{state_code}{year_digits}{cnpj}{MODEL}{series:03d}{first:09d}{last:09d}"

        root = etree.Element(f"{{{NFCOM_NS}}}inutNFCom", nsmap={None: NFCOM_NS}, versao=SCHEMA_VERSION)
        info = etree.SubElement(root, f"{{{NFCOM_NS}}}infInut", Id=inut_id)
        for name, value in (
            ("tpAmb", str(self.config.environment.code)),
            ("cUF", state_code),
            ("ano", year_digits),
            ("CNPJ", cnpj),
            ("mod", MODEL),
            ("serie", str(series)),
            ("nNFIni", str(first)),
            ("nNFFin", str(last)),
            ("xJust", justification),
        ):
            etree.SubElement(info, f"{{{NFCOM_NS}}}{name}").text = value

        signed = XmlSigner(target_tag=f"{{{NFCOM_NS}}}infInut").sign(root, credential)
        with submission_scope(signed.reference_id):
            logger.info("Voiding series %s numbers %s..%s", series, first, last)
            raw = self.client.call(
                SoapRequest(operation=INUTILIZATION, element=signed.element()),
                credential,
                url,
            )
            return self.interpreter.interpret_inutilization(raw)
