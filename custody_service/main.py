import base64
import binascii
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from custodychain import (
    AnchorUnavailable,
    BatchInput,
    BatchStatus,
    ConfidentialityLevel,
    Contact,
    CredentialType,
    CustodyEngine,
    CustodyError,
    DocumentType,
    EncodingError,
    EventInput,
    EventType,
    FacilityType,
    InvalidTransition,
    Location,
    NotFound,
    PartyType,
    ValidationError,
    display_fingerprint,
    fingerprint,
)

from .config import ENV, LOG_JSON, LOG_LEVEL, get_anchor_dispatcher, is_debug, validate_config
from .db import SqliteStore
from .logging_config import audit_log, configure_logging, set_request_id
from .models import (
    BatchCreate,
    ContactUpdate,
    CredentialCreate,
    DocumentContent,
    DocumentCreate,
    EventCreate,
    FacilityCreate,
    FingerprintRequest,
    PartyCreate,
)

app = FastAPI(title="Custody Chain Service")

STORE = SqliteStore()
ENGINE: Optional[CustodyEngine] = None


def _on_anchor(record):
    audit_log.anchor_result(record.subject_id, record.state.value, record.external_ref, record.last_error)


@app.on_event("startup")
def _startup():
    global ENGINE
    configure_logging(level="DEBUG" if is_debug() else LOG_LEVEL, json_format=LOG_JSON)
    STORE.init_db()
    if ENGINE is None:
        ENGINE = CustodyEngine(store=STORE, dispatcher=get_anchor_dispatcher(), anchor_listener=_on_anchor)


@app.on_event("shutdown")
def _shutdown():
    global ENGINE
    if ENGINE is not None:
        ENGINE.close()
        ENGINE = None
    STORE.close_connection()


@app.middleware("http")
async def _request_id(request: Request, call_next):
    rid = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    return response


# ============================================================
# Error mapping
# ============================================================

def _error(status: int, code: str, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": code, "detail": str(exc)})


@app.exception_handler(NotFound)
async def _not_found(request: Request, exc: NotFound):
    return _error(404, "NOT_FOUND", exc)


@app.exception_handler(InvalidTransition)
async def _invalid_transition(request: Request, exc: InvalidTransition):
    audit_log.transition_rejected(exc.subject_id, exc.current_status, exc.attempted)
    return _error(409, "INVALID_TRANSITION", exc)


@app.exception_handler(ValidationError)
async def _validation(request: Request, exc: ValidationError):
    return _error(422, "VALIDATION_ERROR", exc)


@app.exception_handler(EncodingError)
async def _encoding(request: Request, exc: EncodingError):
    return _error(422, "ENCODING_ERROR", exc)


@app.exception_handler(AnchorUnavailable)
async def _anchor_unavailable(request: Request, exc: AnchorUnavailable):
    return _error(503, "ANCHOR_UNAVAILABLE", exc)


@app.exception_handler(CustodyError)
async def _custody_error(request: Request, exc: CustodyError):
    return _error(400, "CUSTODY_ERROR", exc)


def _decode_content(content: Optional[str], content_base64: Optional[str]) -> Optional[bytes]:
    if content is not None and content_base64 is not None:
        raise ValidationError("Provide content or contentBase64, not both")
    if content_base64 is not None:
        try:
            return base64.b64decode(content_base64, validate=True)
        except binascii.Error as e:
            raise ValidationError(f"contentBase64 is not valid base64: {e}")
    if content is not None:
        return content.encode("utf-8")
    return None


# ============================================================
# Service
# ============================================================

@app.get("/health")
def health():
    return {
        "status": "ok",
        "env": ENV,
        "anchoring": ENGINE.dispatcher.gateway.describe() if ENGINE.dispatcher else None,
        "config": validate_config(),
        "db": STORE.get_db_stats(),
    }


@app.get("/enums")
def enums():
    return {
        "partyTypes": [e.value for e in PartyType],
        "facilityTypes": [e.value for e in FacilityType],
        "documentTypes": [e.value for e in DocumentType],
        "confidentialityLevels": [e.value for e in ConfidentialityLevel],
        "batchStatuses": [e.value for e in BatchStatus],
        "eventTypes": [e.value for e in EventType],
        "credentialTypes": [e.value for e in CredentialType],
    }


@app.post("/fingerprint")
def compute_fingerprint(req: FingerprintRequest):
    digest = fingerprint(req.record, req.scheme_version)
    return {"fingerprint": digest, "display": display_fingerprint(digest), "schemeVersion": req.scheme_version}


# ============================================================
# Parties / facilities
# ============================================================

@app.post("/parties", status_code=201)
def create_party(req: PartyCreate):
    contact = Contact(name=req.contact.name, email=req.contact.email) if req.contact else None
    party = ENGINE.register_party(req.legal_name, req.party_type, req.country, contact, req.registration_id)
    return party.to_dict()


@app.get("/parties")
def list_parties():
    return [p.to_dict() for p in ENGINE.list_parties()]


@app.get("/parties/{party_id}")
def get_party(party_id: str):
    return ENGINE.get_party(party_id).to_dict()


@app.patch("/parties/{party_id}/contact")
def update_party_contact(party_id: str, req: ContactUpdate):
    contact = Contact(name=req.contact.name, email=req.contact.email) if req.contact else None
    return ENGINE.update_party_contact(party_id, contact).to_dict()


@app.post("/facilities", status_code=201)
def create_facility(req: FacilityCreate):
    location = Location(country=req.location.country, region=req.location.region, coordinates=req.location.gps)
    facility = ENGINE.register_facility(
        req.facility_name, req.facility_type, req.owner_party_id, location, req.permit_ids
    )
    return facility.to_dict()


@app.get("/facilities")
def list_facilities():
    return [f.to_dict() for f in ENGINE.list_facilities()]


@app.get("/facilities/{facility_id}")
def get_facility(facility_id: str):
    return ENGINE.get_facility(facility_id).to_dict()


# ============================================================
# Documents
# ============================================================

@app.post("/documents", status_code=201)
def create_document(req: DocumentCreate):
    document = ENGINE.register_document(
        document_type=req.document_type,
        file_name=req.file_name,
        content=_decode_content(req.content, req.content_base64),
        content_fingerprint=req.fingerprint,
        confidentiality=req.confidentiality_level,
        issuer_party_id=req.issuer_party_id,
        related_batch_id=req.related_batch_id,
        related_event_id=req.related_event_id,
        storage_uri=req.storage_uri,
        issued_date=req.issued_date,
    )
    return document.to_dict()


@app.get("/documents")
def list_documents(batch_id: Optional[str] = Query(default=None, alias="batchId")):
    return [d.to_dict() for d in ENGINE.list_documents(batch_id)]


@app.get("/documents/{document_id}")
def get_document(document_id: str):
    return ENGINE.get_document(document_id).to_dict()


@app.post("/documents/{document_id}/verify")
def verify_document(document_id: str, req: DocumentContent):
    content = _decode_content(req.content, req.content_base64)
    if content is None:
        raise ValidationError("Provide content or contentBase64")
    result = ENGINE.verify_document(document_id, content)
    audit_log.document_verified(document_id, result["valid"])
    return result


# ============================================================
# Batches
# ============================================================

@app.post("/batches", status_code=201)
def create_batch(req: BatchCreate):
    batch, event = ENGINE.create_batch(
        BatchInput(
            external_reference=req.external_reference_number,
            commodity_type=req.commodity_type,
            origin_facility_id=req.origin_facility_id,
            owner_party_id=req.owner_party_id,
            weight=req.weight,
            weight_unit=req.weight_unit,
            declared_assay_value=req.declared_assay,
            declared_assay_unit=req.assay_unit,
            notes=req.notes,
        ),
        document_ids=req.document_ids,
    )
    audit_log.batch_created(batch.batch_id, batch.external_reference, batch.fingerprint)
    return {"batch": batch.to_dict(), "event": event.to_dict()}


@app.get("/batches")
def list_batches(status: Optional[str] = None):
    return [b.to_dict() for b in ENGINE.list_batches(status)]


@app.get("/batches/reference/{reference}")
def get_batch_by_reference(reference: str):
    return ENGINE.get_batch_by_reference(reference).to_dict()


@app.get("/batches/{batch_id}")
def get_batch(batch_id: str):
    data = ENGINE.get_batch(batch_id).to_dict()
    data["allowedEvents"] = ENGINE.allowed_events(batch_id)
    return data


@app.get("/batches/{batch_id}/events")
def list_events(batch_id: str):
    return [e.to_dict() for e in ENGINE.get_events(batch_id)]


@app.post("/batches/{batch_id}/events", status_code=201)
def append_event(batch_id: str, req: EventCreate):
    event = ENGINE.append_event(batch_id, EventInput(
        event_type=req.event_type,
        from_party_id=req.from_party_id,
        to_party_id=req.to_party_id,
        from_facility_id=req.from_facility_id,
        to_facility_id=req.to_facility_id,
        weight=req.weight,
        weight_unit=req.weight_unit,
        assay_value=req.assay_value,
        assay_unit=req.assay_unit,
        document_ids=req.document_ids,
        notes=req.notes,
    ))
    audit_log.event_appended(batch_id, event.event_id, event.event_type.value, event.fingerprint)
    return event.to_dict()


@app.post("/batches/{batch_id}/close")
def close_batch(batch_id: str):
    return ENGINE.close_batch(batch_id).to_dict()


@app.get("/batches/{batch_id}/verify")
def verify_batch(batch_id: str):
    report = ENGINE.verify_batch(batch_id)
    audit_log.verification_completed(
        batch_id,
        report.overall_valid,
        [e.event_id for e in report.events if not e.hash_match],
        len(report.anchor_warnings),
    )
    return report.to_dict()


@app.get("/batches/{batch_id}/chain-of-custody")
def chain_of_custody(batch_id: str):
    return ENGINE.chain_of_custody(batch_id)


@app.get("/batches/{batch_id}/export")
def export_batch(batch_id: str):
    return ENGINE.export_batch_package(batch_id)


# ============================================================
# Anchors
# ============================================================

@app.get("/anchors/{subject_id}")
def get_anchor(subject_id: str):
    return ENGINE.get_anchor(subject_id).to_dict()


@app.post("/anchors/{subject_id}/refresh")
def refresh_anchor(subject_id: str):
    return ENGINE.refresh_anchor(subject_id).to_dict()


# ============================================================
# Credentials
# ============================================================

@app.post("/credentials", status_code=201)
def issue_credential(req: CredentialCreate):
    credential = ENGINE.issue_credential(
        credential_type=req.credential_type,
        issuer_party_id=req.issuer_party_id,
        claims_summary=req.claims_summary,
        subject_batch_id=req.subject_batch_id,
        subject_facility_id=req.subject_facility_id,
        supporting_document_ids=req.supporting_document_ids,
    )
    return credential.to_dict()


@app.get("/credentials")
def list_credentials(batch_id: Optional[str] = Query(default=None, alias="batchId")):
    return [c.to_dict() for c in ENGINE.list_credentials(batch_id)]


@app.get("/credentials/{credential_id}")
def get_credential(credential_id: str):
    return ENGINE.get_credential(credential_id).to_dict()


# ============================================================
# Audit trail and import
# ============================================================

@app.get("/audit")
def audit_trail(entity_id: Optional[str] = Query(default=None, alias="entityId")):
    return [entry.to_dict() for entry in ENGINE.get_audit_log(entity_id)]


@app.post("/import", status_code=201)
def import_package(package: Dict[str, Any]):
    counts = ENGINE.import_package(package)
    audit_log.package_imported(counts)
    return {"success": True, "imported": counts}
