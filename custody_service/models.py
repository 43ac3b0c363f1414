from pydantic import BaseModel, ConfigDict, Field
from typing import Any, List, Optional


class RequestModel(BaseModel):
    """Request bodies use camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class ContactIn(RequestModel):
    name: Optional[str] = None
    email: Optional[str] = None


class PartyCreate(RequestModel):
    legal_name: str = Field(alias="legalName")
    party_type: str = Field(alias="partyType")
    country: str
    contact: Optional[ContactIn] = None
    registration_id: Optional[str] = Field(default=None, alias="registrationId")


class ContactUpdate(RequestModel):
    contact: Optional[ContactIn] = None


class LocationIn(RequestModel):
    country: str
    region: Optional[str] = None
    gps: Optional[str] = None


class FacilityCreate(RequestModel):
    facility_name: str = Field(alias="facilityName")
    facility_type: str = Field(alias="facilityType")
    owner_party_id: str = Field(alias="ownerPartyId")
    location: LocationIn
    permit_ids: List[str] = Field(default_factory=list, alias="permitIds")


class DocumentCreate(RequestModel):
    document_type: str = Field(alias="documentType")
    file_name: str = Field(alias="fileName")
    content: Optional[str] = None
    content_base64: Optional[str] = Field(default=None, alias="contentBase64")
    fingerprint: Optional[str] = None
    confidentiality_level: str = Field(default="Restricted", alias="confidentialityLevel")
    issuer_party_id: Optional[str] = Field(default=None, alias="issuerPartyId")
    related_batch_id: Optional[str] = Field(default=None, alias="relatedBatchId")
    related_event_id: Optional[str] = Field(default=None, alias="relatedEventId")
    storage_uri: Optional[str] = Field(default=None, alias="storageUri")
    issued_date: Optional[str] = Field(default=None, alias="issuedDate")


class DocumentContent(RequestModel):
    content: Optional[str] = None
    content_base64: Optional[str] = Field(default=None, alias="contentBase64")


class BatchCreate(RequestModel):
    external_reference_number: str = Field(alias="externalReferenceNumber")
    commodity_type: str = Field(alias="commodityType")
    origin_facility_id: str = Field(alias="originFacilityId")
    owner_party_id: str = Field(alias="ownerPartyId")
    weight: float = Field(ge=0)
    weight_unit: str = Field(default="kg", alias="weightUnit")
    declared_assay: Optional[float] = Field(default=None, alias="declaredAssay")
    assay_unit: Optional[str] = Field(default=None, alias="assayUnit")
    document_ids: List[str] = Field(default_factory=list, alias="documentIds")
    notes: Optional[str] = None


class EventCreate(RequestModel):
    event_type: str = Field(alias="eventType")
    from_party_id: Optional[str] = Field(default=None, alias="fromPartyId")
    to_party_id: Optional[str] = Field(default=None, alias="toPartyId")
    from_facility_id: Optional[str] = Field(default=None, alias="fromFacilityId")
    to_facility_id: Optional[str] = Field(default=None, alias="toFacilityId")
    weight: Optional[float] = Field(default=None, ge=0)
    weight_unit: Optional[str] = Field(default=None, alias="weightUnit")
    assay_value: Optional[float] = Field(default=None, alias="assayValue")
    assay_unit: Optional[str] = Field(default=None, alias="assayUnit")
    document_ids: List[str] = Field(default_factory=list, alias="documentIds")
    notes: Optional[str] = None


class FingerprintRequest(RequestModel):
    record: Any
    scheme_version: str = Field(default="1", alias="schemeVersion")


class CredentialCreate(RequestModel):
    credential_type: str = Field(alias="credentialType")
    issuer_party_id: str = Field(alias="issuerPartyId")
    claims_summary: str = Field(alias="claimsSummary")
    subject_batch_id: Optional[str] = Field(default=None, alias="subjectBatchId")
    subject_facility_id: Optional[str] = Field(default=None, alias="subjectFacilityId")
    supporting_document_ids: List[str] = Field(default_factory=list, alias="supportingDocumentIds")
