"""
Logging configuration for the custody service.

Every line is a JSON object carrying the request id, so a custody action can
be followed from the HTTP request through the engine to the anchor result
that arrives later on a dispatcher thread.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, List, Optional

from custodychain.canonicalization import format_datetime

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')

MAX_REQUEST_ID_LENGTH = 128

# Libraries whose INFO output drowns the audit trail
_QUIET_LOGGERS = ("urllib3", "httpx", "uvicorn.access")


class StructuredFormatter(logging.Formatter):
    """JSON lines with UTC millisecond timestamps, matching stored record timestamps."""

    def __init__(self, service: str = "custody"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": format_datetime(datetime.fromtimestamp(record.created, tz=timezone.utc)),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, 'extra_fields', None)
        if extra_fields:
            log_data.update({k: v for k, v in extra_fields.items() if v is not None})

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Logger for custody audit events.

    Every state change and every verification verdict is logged with the
    identifiers and fingerprints needed to reconstruct it later.
    """

    def __init__(self, name: str = "custody.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, message: str, **fields) -> None:
        if not self._logger.isEnabledFor(level):
            return
        record = self._logger.makeRecord(
            self._logger.name, level, __file__, 0, f"{event_type}: {message}", (), None
        )
        record.extra_fields = {"event_type": event_type, **fields}
        self._logger.handle(record)

    def batch_created(self, batch_id: str, external_reference: str, fingerprint: str) -> None:
        self._log(
            logging.INFO,
            "BATCH_CREATED",
            batch_id=batch_id,
            external_reference=external_reference,
            fingerprint=fingerprint,
            message=f"Batch {external_reference} created"
        )

    def event_appended(self, batch_id: str, event_id: str, custody_event: str, fingerprint: str) -> None:
        self._log(
            logging.INFO,
            "EVENT_APPENDED",
            batch_id=batch_id,
            event_id=event_id,
            custody_event=custody_event,
            fingerprint=fingerprint,
            message=f"{custody_event} appended to batch {batch_id}"
        )

    def transition_rejected(self, subject_id: Optional[str], current_status: Optional[str], attempted: str) -> None:
        """Log an event type that was illegal for the batch status."""
        self._log(
            logging.WARNING,
            "TRANSITION_REJECTED",
            subject_id=subject_id,
            current_status=current_status,
            attempted=attempted,
            message=f"{attempted} rejected in status {current_status}"
        )

    def anchor_result(self, subject_id: str, state: str, external_ref: Optional[str] = None,
                      error: Optional[str] = None) -> None:
        level = logging.WARNING if error else logging.INFO
        self._log(
            level,
            "ANCHOR_RESULT",
            subject_id=subject_id,
            state=state,
            external_ref=external_ref,
            error=error,
            message=f"Anchor for {subject_id} is {state}"
        )

    def verification_completed(self, batch_id: str, overall_valid: bool, mismatched_events: List[str],
                               anchor_warnings: int = 0) -> None:
        """Log a verification verdict; failures are logged at ERROR."""
        level = logging.INFO if overall_valid else logging.ERROR
        self._log(
            level,
            "VERIFICATION_COMPLETED",
            batch_id=batch_id,
            overall_valid=overall_valid,
            mismatched_events=mismatched_events,
            anchor_warnings=anchor_warnings,
            message=f"Batch {batch_id} verification {'passed' if overall_valid else 'FAILED'}"
        )

    def document_verified(self, document_id: str, valid: bool) -> None:
        level = logging.INFO if valid else logging.WARNING
        self._log(
            level,
            "DOCUMENT_VERIFIED",
            document_id=document_id,
            valid=valid,
            message=f"Document {document_id} {'matches' if valid else 'does not match'} its fingerprint"
        )

    def package_imported(self, counts: Dict[str, int]) -> None:
        self._log(
            logging.INFO,
            "PACKAGE_IMPORTED",
            counts=counts,
            message=f"Imported {counts.get('batches', 0)} batch(es), {counts.get('events', 0)} event(s)"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Install one handler on the root logger.

    Engine modules log through logging.getLogger(__name__) and inherit this
    setup; the service never configures them individually.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = StructuredFormatter() if json_format else logging.Formatter(
        '%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s'
    )

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Bind a request ID to the current context.

    A caller-supplied X-Request-ID is kept (truncated); otherwise a fresh
    one is generated. Returns the ID in effect.
    """
    request_id = (request_id or "").strip()[:MAX_REQUEST_ID_LENGTH] or str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    return request_id_var.get()


audit_log = AuditLogger()
