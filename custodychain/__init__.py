"""
Custody Chain Integrity Engine

Version: 1.0.0

Tamper-evident chain of custody for physical commodity batches.

Every custody event is reduced to a canonical byte encoding and fingerprinted
with SHA-256. Fingerprints are optionally corroborated by an external ledger
anchor. Verification recomputes every fingerprint from stored fields and
reports mismatches per event; anchor results are reported separately and
never decide integrity on their own.

Usage:
    from custodychain import (
        CustodyEngine,
        AnchorDispatcher,
        SimulatedAnchorGateway,
        BatchInput,
        EventInput,
        EventType,
    )

    engine = CustodyEngine(dispatcher=AnchorDispatcher(SimulatedAnchorGateway()))

    batch, create_event = engine.create_batch(BatchInput(...))
    engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=...))

    report = engine.verify_batch(batch.batch_id)
    if not report.overall_valid:
        for mismatch in report.mismatches:
            ...
"""

__version__ = "1.0.0"
__license__ = "Apache-2.0"

# Errors
from .errors import (
    CustodyError,
    EncodingError,
    InvalidTransition,
    NotFound,
    ValidationError,
    AnchorUnavailable,
)

# Canonicalization and hashing
from .canonicalization import ABSENT, canonicalize, canonicalize_str, omit_none
from .hashing import (
    CURRENT_SCHEME_VERSION,
    FingerprintScheme,
    register_scheme,
    get_scheme,
    fingerprint,
    fingerprint_of_bytes,
    display_fingerprint,
    parse_fingerprint,
    fingerprints_match,
)

# Data model
from .models import (
    PartyType,
    FacilityType,
    DocumentType,
    ConfidentialityLevel,
    BatchStatus,
    EventType,
    Quantity,
    Assay,
    Contact,
    Location,
    Party,
    Facility,
    Document,
    Batch,
    Event,
    UnreadableEvent,
    Credential,
    CredentialType,
    AuditAction,
    AuditEntry,
    BatchInput,
    EventInput,
)

# Chain rules
from .chain import (
    event_payload,
    batch_payload,
    compute_event_fingerprint,
    compute_batch_fingerprint,
    plan_transition,
    apply_event,
    order_events,
)

# Anchoring
from .anchoring import (
    AnchorState,
    AnchorRecord,
    SubmitReceipt,
    ConfirmationStatus,
    AnchorGateway,
    SimulatedAnchorGateway,
    DisabledAnchorGateway,
    JsonRpcAnchorGateway,
    AnchorDispatcher,
    NETWORKS,
)

# Persistence
from .store import CustodyStore, InMemoryStore

# Verification
from .verifier import (
    IntegrityVerifier,
    VerificationReport,
    EventVerification,
    AnchorVerification,
    FingerprintMismatch,
    verify_package,
)

# Engine
from .engine import CustodyEngine, custody_status


__all__ = [
    # Version
    "__version__",

    # Errors
    "CustodyError",
    "EncodingError",
    "InvalidTransition",
    "NotFound",
    "ValidationError",
    "AnchorUnavailable",

    # Canonicalization
    "ABSENT",
    "canonicalize",
    "canonicalize_str",
    "omit_none",

    # Hashing
    "CURRENT_SCHEME_VERSION",
    "FingerprintScheme",
    "register_scheme",
    "get_scheme",
    "fingerprint",
    "fingerprint_of_bytes",
    "display_fingerprint",
    "parse_fingerprint",
    "fingerprints_match",

    # Data model
    "PartyType",
    "FacilityType",
    "DocumentType",
    "ConfidentialityLevel",
    "BatchStatus",
    "EventType",
    "Quantity",
    "Assay",
    "Contact",
    "Location",
    "Party",
    "Facility",
    "Document",
    "Batch",
    "Event",
    "UnreadableEvent",
    "Credential",
    "CredentialType",
    "AuditAction",
    "AuditEntry",
    "BatchInput",
    "EventInput",

    # Chain rules
    "event_payload",
    "batch_payload",
    "compute_event_fingerprint",
    "compute_batch_fingerprint",
    "plan_transition",
    "apply_event",
    "order_events",

    # Anchoring
    "AnchorState",
    "AnchorRecord",
    "SubmitReceipt",
    "ConfirmationStatus",
    "AnchorGateway",
    "SimulatedAnchorGateway",
    "DisabledAnchorGateway",
    "JsonRpcAnchorGateway",
    "AnchorDispatcher",
    "NETWORKS",

    # Persistence
    "CustodyStore",
    "InMemoryStore",

    # Verification
    "IntegrityVerifier",
    "VerificationReport",
    "EventVerification",
    "AnchorVerification",
    "FingerprintMismatch",
    "verify_package",

    # Engine
    "CustodyEngine",
    "custody_status",
]
