"""
Logging configuration for NFCom.

Provides structured JSON logging and an audit logger for submission events.
"""

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# Context variable for submission ID tracking
submission_id_var: ContextVar[str] = ContextVar('submission_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    One JSON object per line, suitable for log aggregation.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        submission_id = submission_id_var.get()
        if submission_id:
            log_data["submission_id"] = submission_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class SubmissionLogger:
    """
    Audit logger for submission events.

    Every attempt, outcome and retry decision of the orchestrator goes
    through here so a submission can be reconstructed from the log.
    """

    def __init__(self, name: str = "nfcom.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "event_type": event_type,
            "submission_id": submission_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def submission_started(self, reference_id: str, url: str) -> None:
        self._log(
            logging.INFO,
            "SUBMISSION_STARTED",
            reference_id=reference_id,
            url=url,
            message=f"Submitting {reference_id}"
        )

    def document_signed(self, reference_id: str, digest_value: str) -> None:
        self._log(
            logging.INFO,
            "DOCUMENT_SIGNED",
            reference_id=reference_id,
            digest_value=digest_value,
            message=f"Signed {reference_id}"
        )

    def attempt_sent(self, attempt: int, max_attempts: int, payload_size: int) -> None:
        self._log(
            logging.INFO,
            "ATTEMPT_SENT",
            attempt=attempt,
            max_attempts=max_attempts,
            payload_size=payload_size,
            message=f"Attempt {attempt}/{max_attempts}"
        )

    def outcome(self, kind: str, code: Optional[str], reason: Optional[str]) -> None:
        """Log the outcome of one attempt."""
        level = logging.INFO if kind == "AUTHORIZED" else logging.WARNING
        self._log(
            level,
            "OUTCOME",
            outcome=kind,
            code=code,
            reason=reason,
            message=f"{kind} [{code}] {reason or ''}".rstrip()
        )

    def retry_scheduled(self, attempt: int, delay: float, reason: str) -> None:
        self._log(
            logging.WARNING,
            "RETRY_SCHEDULED",
            attempt=attempt,
            delay_seconds=delay,
            reason=reason,
            message=f"Retrying in {delay:.1f}s after attempt {attempt}: {reason}"
        )

    def retries_exhausted(self, attempts: int, reason: str) -> None:
        self._log(
            logging.ERROR,
            "RETRIES_EXHAUSTED",
            attempts=attempts,
            reason=reason,
            message=f"Authority unavailable after {attempts} attempts: {reason}"
        )

    def certificate_expiring(self, identity: Optional[str], days_left: int) -> None:
        self._log(
            logging.WARNING,
            "CERTIFICATE_EXPIRING",
            identity=identity,
            days_left=days_left,
            message=f"Certificate expires in {days_left} days"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_submission_id(submission_id: Optional[str] = None) -> str:
    """
    Set the submission ID for the current context.

    Args:
        submission_id: ID to set, or None to generate one

    Returns:
        The submission ID that was set
    """
    if submission_id is None:
        submission_id = str(uuid.uuid4())
    submission_id_var.set(submission_id)
    return submission_id


def get_submission_id() -> str:
    return submission_id_var.get()


@contextmanager
def submission_scope(submission_id: str) -> Iterator[str]:
    """Set the submission ID for the duration of a block, restoring the previous one on exit."""
    token = submission_id_var.set(submission_id)
    try:
        yield submission_id
    finally:
        submission_id_var.reset(token)


audit_log = SubmissionLogger()
