"""
Custody Chain Error Taxonomy

Every failure the engine raises derives from CustodyError so callers can
catch the whole family at their boundary. Fingerprint mismatches are NOT
exceptions: they are facts recorded in verification output (see
verifier.FingerprintMismatch).
"""

from typing import Optional


class CustodyError(Exception):
    """Base class for all engine errors."""


class EncodingError(CustodyError):
    """A value has no canonical form (cycle, NaN, function, unknown type)."""

    def __init__(self, message: str, path: str = "$"):
        self.path = path
        super().__init__(f"{message} at {path}")


class InvalidTransition(CustodyError):
    """An action is not legal for the subject's current state."""

    def __init__(self, current_status: Optional[str], attempted: str, subject_id: Optional[str] = None):
        self.current_status = current_status
        self.attempted = attempted
        self.subject_id = subject_id
        where = f" on {subject_id}" if subject_id else ""
        super().__init__(f"{attempted} not allowed from {current_status}{where}")


class NotFound(CustodyError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ValidationError(CustodyError):
    """Input is structurally invalid (missing field, bad enum, duplicate reference)."""


class AnchorUnavailable(CustodyError):
    """The anchor gateway timed out or failed at the transport level."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)
