"""
Custody Chain Data Model

Entities tracked by the engine:

- Party: a supply-chain participant (immutable except contact metadata)
- Facility: a physical location (immutable)
- Document: an off-chain artifact, stored only as a content fingerprint
- Batch: the unit of custody; status and owner change as events are appended
- Event: an immutable custody action, fingerprinted at creation
- Credential: an unsigned attestation by a party about a batch or facility
- AuditEntry: one line of the append-only audit trail

Entities serialize to camelCase dictionaries (to_dict / from_dict) so that
stored records and exported packages share one shape.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .canonicalization import format_datetime
from .errors import ValidationError


class PartyType(str, Enum):
    MINE_OPERATOR = "MineOperator"
    TRANSPORTER = "Transporter"
    BUYER = "Buyer"
    REFINERY = "Refinery"
    AUDITOR = "Auditor"
    OTHER = "Other"


class FacilityType(str, Enum):
    MINE = "Mine"
    WAREHOUSE = "Warehouse"
    REFINERY = "Refinery"
    PORT = "Port"
    OTHER = "Other"


class DocumentType(str, Enum):
    PERMIT = "Permit"
    CERTIFICATE_OF_ORIGIN = "CertificateOfOrigin"
    PACKING_LIST = "PackingList"
    WAYBILL = "WaybillAirwayBill"
    PRO_FORMA_INVOICE = "ProFormaInvoice"
    ASSAY_REPORT = "AssayReport"
    OTHER = "Other"


class ConfidentialityLevel(str, Enum):
    PUBLIC = "Public"
    RESTRICTED = "Restricted"
    CONFIDENTIAL = "Confidential"


class CredentialType(str, Enum):
    ORIGIN_PROOF = "OriginProof"
    COMPLIANCE_ATTESTATION = "ComplianceAttestation"
    ASSAY_ATTESTATION = "AssayAttestation"


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    IMPORT = "IMPORT"


class BatchStatus(str, Enum):
    """
    Batch lifecycle states.

    CLOSED is terminal. DISPUTE is exceptional and is left only by a
    Resolve event, which restores the status held before the dispute.
    """
    CREATED = "Created"
    IN_TRANSIT = "InTransit"
    RECEIVED = "Received"
    DISPUTE = "Dispute"
    CLOSED = "Closed"


class EventType(str, Enum):
    CREATE = "Create"
    SHIP = "Ship"
    TRANSFER = "Transfer"
    RECEIVE = "Receive"
    INSPECT_TEST = "InspectTest"
    ASSAY_FINALIZED = "AssayFinalized"
    DISPUTE = "Dispute"
    RESOLVE = "Resolve"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def coerce_enum(enum_cls, value, field_name: str):
    """Accept an enum member or its string value; reject anything else."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [e.value for e in enum_cls]
        raise ValidationError(f"Invalid {field_name} {value!r}: must be one of {allowed}")


def require(value, field_name: str):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field_name} is required")
    return value


# =============================================================================
# VALUE OBJECTS
# =============================================================================

@dataclass(frozen=True)
class Quantity:
    weight: float
    unit: str = "kg"

    def __post_init__(self):
        if isinstance(self.weight, bool) or not isinstance(self.weight, (int, float)):
            raise ValidationError(f"weight must be a number, got {self.weight!r}")
        if self.weight < 0:
            raise ValidationError("weight must not be negative")
        require(self.unit, "unit")

    def to_dict(self) -> Dict[str, Any]:
        return {"weight": self.weight, "unit": self.unit}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Quantity"]:
        if data is None:
            return None
        return cls(weight=data["weight"], unit=data.get("unit") or "kg")


@dataclass(frozen=True)
class Assay:
    value: float
    unit: str = "g/t"

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "unit": self.unit}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Assay"]:
        if data is None:
            return None
        return cls(value=data["value"], unit=data.get("unit") or "g/t")


@dataclass(frozen=True)
class Contact:
    name: Optional[str] = None
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "email": self.email}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Contact"]:
        if data is None:
            return None
        return cls(name=data.get("name"), email=data.get("email"))


@dataclass(frozen=True)
class Location:
    country: str
    region: Optional[str] = None
    coordinates: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"country": self.country, "region": self.region, "gps": self.coordinates}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Location":
        return cls(country=data["country"], region=data.get("region"), coordinates=data.get("gps"))


# =============================================================================
# ENTITIES
# =============================================================================

@dataclass
class Party:
    party_id: str
    legal_name: str
    party_type: PartyType
    country: str
    contact: Optional[Contact] = None
    registration_id: Optional[str] = None
    created_at: str = ""

    def __post_init__(self):
        require(self.legal_name, "legalName")
        require(self.country, "country")
        self.party_type = coerce_enum(PartyType, self.party_type, "partyType")
        if not self.created_at:
            self.created_at = format_datetime(utc_now())

    def with_contact(self, contact: Optional[Contact]) -> "Party":
        """Contact metadata is the only mutable part of a Party."""
        return replace(self, contact=contact)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partyId": self.party_id,
            "legalName": self.legal_name,
            "partyType": self.party_type.value,
            "country": self.country,
            "contact": self.contact.to_dict() if self.contact else None,
            "registrationId": self.registration_id,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Party":
        return cls(
            party_id=data["partyId"],
            legal_name=data["legalName"],
            party_type=data["partyType"],
            country=data["country"],
            contact=Contact.from_dict(data.get("contact")),
            registration_id=data.get("registrationId"),
            created_at=data.get("createdAt", ""),
        )


@dataclass
class Facility:
    facility_id: str
    name: str
    facility_type: FacilityType
    owner_party_id: str
    location: Location
    permit_ids: List[str] = field(default_factory=list)
    created_at: str = ""

    def __post_init__(self):
        require(self.name, "facilityName")
        require(self.owner_party_id, "ownerPartyId")
        self.facility_type = coerce_enum(FacilityType, self.facility_type, "facilityType")
        if not self.created_at:
            self.created_at = format_datetime(utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facilityId": self.facility_id,
            "facilityName": self.name,
            "facilityType": self.facility_type.value,
            "ownerPartyId": self.owner_party_id,
            "location": self.location.to_dict(),
            "permitIds": list(self.permit_ids),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Facility":
        return cls(
            facility_id=data["facilityId"],
            name=data["facilityName"],
            facility_type=data["facilityType"],
            owner_party_id=data["ownerPartyId"],
            location=Location.from_dict(data["location"]),
            permit_ids=list(data.get("permitIds") or []),
            created_at=data.get("createdAt", ""),
        )


@dataclass
class Document:
    """
    Off-chain supporting artifact.

    The content itself is never held here, only its fingerprint.
    """
    document_id: str
    document_type: DocumentType
    file_name: str
    fingerprint: str
    confidentiality: ConfidentialityLevel = ConfidentialityLevel.RESTRICTED
    issuer_party_id: Optional[str] = None
    related_batch_id: Optional[str] = None
    related_event_id: Optional[str] = None
    storage_uri: Optional[str] = None
    issued_date: Optional[str] = None
    created_at: str = ""

    def __post_init__(self):
        require(self.file_name, "fileName")
        self.document_type = coerce_enum(DocumentType, self.document_type, "documentType")
        self.confidentiality = coerce_enum(ConfidentialityLevel, self.confidentiality, "confidentialityLevel")
        if not self.created_at:
            self.created_at = format_datetime(utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentId": self.document_id,
            "documentType": self.document_type.value,
            "fileName": self.file_name,
            "fingerprint": self.fingerprint,
            "confidentialityLevel": self.confidentiality.value,
            "issuerPartyId": self.issuer_party_id,
            "relatedBatchId": self.related_batch_id,
            "relatedEventId": self.related_event_id,
            "storageUri": self.storage_uri,
            "issuedDate": self.issued_date,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        return cls(
            document_id=data["documentId"],
            document_type=data["documentType"],
            file_name=data["fileName"],
            fingerprint=data["fingerprint"],
            confidentiality=data.get("confidentialityLevel", ConfidentialityLevel.RESTRICTED.value),
            issuer_party_id=data.get("issuerPartyId"),
            related_batch_id=data.get("relatedBatchId"),
            related_event_id=data.get("relatedEventId"),
            storage_uri=data.get("storageUri"),
            issued_date=data.get("issuedDate"),
            created_at=data.get("createdAt", ""),
        )


@dataclass
class Credential:
    """
    An attestation issued by a party about a batch or a facility.

    This is an unsigned assertion: the issuer is recorded, nothing is
    cryptographically signed.
    """
    credential_id: str
    credential_type: CredentialType
    issuer_party_id: str
    claims_summary: str
    subject_batch_id: Optional[str] = None
    subject_facility_id: Optional[str] = None
    supporting_document_ids: List[str] = field(default_factory=list)
    issued_at: str = ""

    def __post_init__(self):
        require(self.issuer_party_id, "issuerPartyId")
        require(self.claims_summary, "claimsSummary")
        self.credential_type = coerce_enum(CredentialType, self.credential_type, "credentialType")
        if not self.subject_batch_id and not self.subject_facility_id:
            raise ValidationError("A credential needs a subject batch or facility")
        if not self.issued_at:
            self.issued_at = format_datetime(utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credentialId": self.credential_id,
            "credentialType": self.credential_type.value,
            "issuerPartyId": self.issuer_party_id,
            "claimsSummary": self.claims_summary,
            "subjectBatchId": self.subject_batch_id,
            "subjectFacilityId": self.subject_facility_id,
            "supportingDocumentIds": list(self.supporting_document_ids),
            "issuedAt": self.issued_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        return cls(
            credential_id=data["credentialId"],
            credential_type=data["credentialType"],
            issuer_party_id=data["issuerPartyId"],
            claims_summary=data["claimsSummary"],
            subject_batch_id=data.get("subjectBatchId"),
            subject_facility_id=data.get("subjectFacilityId"),
            supporting_document_ids=list(data.get("supportingDocumentIds") or []),
            issued_at=data.get("issuedAt", ""),
        )


@dataclass
class Batch:
    """
    The unit of custody being tracked.

    event_ids is append-only. fingerprint is the digest of batch_payload()
    as of the last legitimate mutation; anchor corroborates the creation
    fingerprint.
    """
    batch_id: str
    external_reference: str
    commodity_type: str
    origin_facility_id: str
    owner_party_id: str
    created_at: str
    quantity: Quantity
    declared_assay: Optional[Assay] = None
    status: BatchStatus = BatchStatus.CREATED
    prior_status: Optional[BatchStatus] = None
    event_ids: List[str] = field(default_factory=list)
    document_ids: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    fingerprint: Optional[str] = None
    fingerprint_version: Optional[str] = None
    anchor: Optional[Any] = None

    def __post_init__(self):
        require(self.external_reference, "externalReferenceNumber")
        require(self.commodity_type, "commodityType")
        self.status = coerce_enum(BatchStatus, self.status, "status")
        if self.prior_status is not None:
            self.prior_status = coerce_enum(BatchStatus, self.prior_status, "priorStatus")

    @property
    def is_closed(self) -> bool:
        return self.status == BatchStatus.CLOSED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "externalReferenceNumber": self.external_reference,
            "commodityType": self.commodity_type,
            "originFacilityId": self.origin_facility_id,
            "ownerPartyId": self.owner_party_id,
            "creationTimestamp": self.created_at,
            "quantity": self.quantity.to_dict(),
            "declaredAssay": self.declared_assay.to_dict() if self.declared_assay else None,
            "status": self.status.value,
            "priorStatus": self.prior_status.value if self.prior_status else None,
            "eventIds": list(self.event_ids),
            "documentIds": list(self.document_ids),
            "notes": self.notes,
            "fingerprint": self.fingerprint,
            "fingerprintVersion": self.fingerprint_version,
            "anchor": self.anchor.to_dict() if self.anchor else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Batch":
        from .anchoring import AnchorRecord

        return cls(
            batch_id=data["batchId"],
            external_reference=data["externalReferenceNumber"],
            commodity_type=data["commodityType"],
            origin_facility_id=data["originFacilityId"],
            owner_party_id=data["ownerPartyId"],
            created_at=data["creationTimestamp"],
            quantity=Quantity.from_dict(data["quantity"]),
            declared_assay=Assay.from_dict(data.get("declaredAssay")),
            status=data.get("status", BatchStatus.CREATED.value),
            prior_status=data.get("priorStatus"),
            event_ids=list(data.get("eventIds") or []),
            document_ids=list(data.get("documentIds") or []),
            notes=data.get("notes"),
            fingerprint=data.get("fingerprint"),
            fingerprint_version=data.get("fingerprintVersion"),
            anchor=AnchorRecord.from_dict(data["anchor"]) if data.get("anchor") else None,
        )


@dataclass
class Event:
    """
    An immutable custody action.

    Once fingerprinted, every field that feeds event_payload() is frozen;
    only `anchor` may be attached afterwards. `sequence` is the per-batch
    creation order and breaks ties between equal timestamps.
    """
    event_id: str
    event_type: EventType
    timestamp: str
    batch_id: str
    sequence: int = 0
    from_party_id: Optional[str] = None
    to_party_id: Optional[str] = None
    from_facility_id: Optional[str] = None
    to_facility_id: Optional[str] = None
    quantity: Optional[Quantity] = None
    document_ids: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    fingerprint: Optional[str] = None
    fingerprint_version: Optional[str] = None
    anchor: Optional[Any] = None

    def __post_init__(self):
        self.event_type = coerce_enum(EventType, self.event_type, "eventType")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "eventType": self.event_type.value,
            "timestamp": self.timestamp,
            "batchId": self.batch_id,
            "sequence": self.sequence,
            "fromPartyId": self.from_party_id,
            "toPartyId": self.to_party_id,
            "fromFacilityId": self.from_facility_id,
            "toFacilityId": self.to_facility_id,
            "quantity": self.quantity.to_dict() if self.quantity else None,
            "documentIds": list(self.document_ids),
            "notes": self.notes,
            "fingerprint": self.fingerprint,
            "fingerprintVersion": self.fingerprint_version,
            "anchor": self.anchor.to_dict() if self.anchor else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        from .anchoring import AnchorRecord

        return cls(
            event_id=data["eventId"],
            event_type=data["eventType"],
            timestamp=data["timestamp"],
            batch_id=data["batchId"],
            sequence=int(data.get("sequence", 0)),
            from_party_id=data.get("fromPartyId"),
            to_party_id=data.get("toPartyId"),
            from_facility_id=data.get("fromFacilityId"),
            to_facility_id=data.get("toFacilityId"),
            quantity=Quantity.from_dict(data.get("quantity")),
            document_ids=list(data.get("documentIds") or []),
            notes=data.get("notes"),
            fingerprint=data.get("fingerprint"),
            fingerprint_version=data.get("fingerprintVersion"),
            anchor=AnchorRecord.from_dict(data["anchor"]) if data.get("anchor") else None,
        )


@dataclass
class UnreadableEvent:
    """
    A stored event body that no longer decodes into an Event.

    Only verification sees these. They expose the attributes verification
    reads, taken straight from the stored body.
    """
    body: Dict[str, Any]
    error: str
    anchor: Optional[Any] = None

    @property
    def event_id(self) -> str:
        return str(self.body.get("eventId"))

    @property
    def event_type(self) -> str:
        return str(self.body.get("eventType"))

    @property
    def timestamp(self) -> Any:
        return self.body.get("timestamp")

    @property
    def sequence(self) -> int:
        try:
            return int(self.body.get("sequence", 0))
        except (TypeError, ValueError):
            return 0

    @property
    def fingerprint(self) -> Optional[str]:
        return self.body.get("fingerprint")

    @property
    def fingerprint_version(self) -> Optional[str]:
        return self.body.get("fingerprintVersion")


def decode_event(data: Dict[str, Any]):
    """Event.from_dict, or an UnreadableEvent when the body is damaged."""
    try:
        return Event.from_dict(data)
    except (ValidationError, KeyError, TypeError, ValueError) as e:
        reason = f"missing field {e}" if isinstance(e, KeyError) else str(e)
        body = dict(data) if isinstance(data, dict) else {}
        return UnreadableEvent(body=body, error=f"stored event cannot be decoded: {reason}")


@dataclass(frozen=True)
class AuditEntry:
    """One line of the append-only audit trail."""
    timestamp: str
    action: AuditAction
    entity_type: str
    entity_id: str
    actor: str = "system"
    summary: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "action": self.action.value,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "userId": self.actor,
            "dataSummary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            timestamp=data["timestamp"],
            action=coerce_enum(AuditAction, data["action"], "action"),
            entity_type=data["entityType"],
            entity_id=data["entityId"],
            actor=data.get("userId") or "system",
            summary=data.get("dataSummary"),
        )


# =============================================================================
# INPUTS
# =============================================================================

@dataclass
class BatchInput:
    """Caller-supplied fields for a new batch."""
    external_reference: str
    commodity_type: str
    origin_facility_id: str
    owner_party_id: str
    weight: float
    weight_unit: str = "kg"
    declared_assay_value: Optional[float] = None
    declared_assay_unit: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class EventInput:
    """
    Caller-supplied fields for a custody event.

    Which fields are meaningful depends on event_type: Ship, Transfer and
    Receive name a receiving party; AssayFinalized carries assay_value;
    Receive may carry a received weight that amends the batch quantity.
    """
    event_type: EventType
    from_party_id: Optional[str] = None
    to_party_id: Optional[str] = None
    from_facility_id: Optional[str] = None
    to_facility_id: Optional[str] = None
    weight: Optional[float] = None
    weight_unit: Optional[str] = None
    assay_value: Optional[float] = None
    assay_unit: Optional[str] = None
    document_ids: List[str] = field(default_factory=list)
    notes: Optional[str] = None

    def __post_init__(self):
        self.event_type = coerce_enum(EventType, self.event_type, "eventType")
