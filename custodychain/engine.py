"""
Custody Engine

The single entry point that mutates custody state. Collaborators are passed
in: a CustodyStore for persistence, an AnchorDispatcher (wrapping an
AnchorGateway) for external corroboration, and a clock.

Per-batch serialization:
    Every mutation of a batch runs under that batch's lock. Validation,
    fingerprinting and persistence happen inside the lock; anchor dispatch
    happens after it is released, so a slow ledger never blocks appends.
    Different batches never contend.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .anchoring import AnchorDispatcher, AnchorGateway, AnchorRecord
from .canonicalization import canonicalize_str, format_datetime
from .chain import (
    allowed_event_types,
    apply_event,
    build_event,
    compute_batch_fingerprint,
    compute_event_fingerprint,
    parse_timestamp,
    plan_close,
    timestamp_error,
)
from .errors import AnchorUnavailable, NotFound, ValidationError
from .hashing import (
    CURRENT_SCHEME_VERSION,
    fingerprint,
    fingerprint_of_bytes,
    fingerprints_match,
    parse_fingerprint,
)
from .models import (
    Assay,
    AuditAction,
    AuditEntry,
    Batch,
    BatchInput,
    BatchStatus,
    ConfidentialityLevel,
    Contact,
    Credential,
    CredentialType,
    Document,
    DocumentType,
    Event,
    EventInput,
    EventType,
    Facility,
    FacilityType,
    Location,
    Party,
    PartyType,
    Quantity,
    coerce_enum,
    new_id,
    utc_now,
)
from .store import CustodyStore, InMemoryStore, package_as_dump
from .verifier import IntegrityVerifier, VerificationReport


logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"

# Audit summaries keep the head of the canonical record only
AUDIT_SUMMARY_LENGTH = 500


class CustodyEngine:
    """
    Chain-of-custody engine.

    Args:
        store: persistence collaborator (InMemoryStore if omitted)
        dispatcher: anchor dispatcher; None disables anchoring entirely
        clock: returns the current UTC datetime
        anchor_listener: called with every anchor record after it is stored
        confirmation_timeout: bound on each anchor check during verification
    """

    def __init__(
        self,
        store: Optional[CustodyStore] = None,
        dispatcher: Optional[AnchorDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        confirmation_timeout: float = 5.0,
        anchor_listener: Optional[Callable[[AnchorRecord], None]] = None,
    ):
        self.store = store or InMemoryStore()
        self.anchor_listener = anchor_listener
        self.dispatcher = dispatcher
        if dispatcher is not None and dispatcher.on_result is None:
            dispatcher.on_result = self._store_anchor
        self.clock = clock or utc_now
        self.verifier = IntegrityVerifier(
            self.store,
            gateway=dispatcher.gateway if dispatcher else None,
            confirmation_timeout=confirmation_timeout,
        )
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def with_gateway(cls, gateway: AnchorGateway, store: Optional[CustodyStore] = None,
                     immediate: bool = False, **kwargs) -> "CustodyEngine":
        """Build an engine with a default dispatcher around gateway."""
        return cls(store=store, dispatcher=AnchorDispatcher(gateway, immediate=immediate), **kwargs)

    # =========================================================================
    # Locks, clock and audit trail
    # =========================================================================

    @contextmanager
    def _batch_lock(self, batch_id: str):
        with self._locks_guard:
            lock = self._locks.get(batch_id)
            if lock is None:
                lock = self._locks[batch_id] = threading.Lock()
        with lock:
            yield

    def _timestamp_after(self, last: Optional[str]) -> str:
        """Current time, clamped so it never precedes the previous event."""
        now = format_datetime(self.clock())
        if last is None or timestamp_error(last):
            return now
        if parse_timestamp(now) < parse_timestamp(last):
            logger.warning("Clock went backwards (%s < %s); clamping", now, last)
            return last
        return now

    def _audit(self, action: AuditAction, entity_type: str, entity_id: str,
               record: Optional[Dict[str, Any]] = None) -> None:
        summary = canonicalize_str(record)[:AUDIT_SUMMARY_LENGTH] if record is not None else None
        self.store.append_audit(AuditEntry(
            timestamp=format_datetime(self.clock()),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            summary=summary,
        ))

    def get_audit_log(self, entity_id: Optional[str] = None) -> List[AuditEntry]:
        return self.store.load_audit(entity_id)

    # =========================================================================
    # Fingerprints
    # =========================================================================

    def compute_fingerprint(self, record: Any, version: str = CURRENT_SCHEME_VERSION) -> str:
        return fingerprint(record, version)

    # =========================================================================
    # Parties, facilities, documents
    # =========================================================================

    def register_party(
        self,
        legal_name: str,
        party_type: Union[PartyType, str],
        country: str,
        contact: Optional[Contact] = None,
        registration_id: Optional[str] = None,
    ) -> Party:
        party = Party(
            party_id=new_id(),
            legal_name=legal_name,
            party_type=party_type,
            country=country,
            contact=contact,
            registration_id=registration_id,
            created_at=format_datetime(self.clock()),
        )
        self.store.save_party(party)
        self._audit(AuditAction.CREATE, "Party", party.party_id, party.to_dict())
        logger.info("Registered party %s (%s)", party.party_id, party.party_type.value)
        return party

    def update_party_contact(self, party_id: str, contact: Optional[Contact]) -> Party:
        party = self.get_party(party_id).with_contact(contact)
        self.store.save_party(party)
        self._audit(AuditAction.UPDATE, "Party", party.party_id, party.to_dict())
        return party

    def get_party(self, party_id: str) -> Party:
        party = self.store.load_party(party_id)
        if party is None:
            raise NotFound("Party", party_id)
        return party

    def list_parties(self) -> List[Party]:
        return self.store.list_parties()

    def register_facility(
        self,
        name: str,
        facility_type: Union[FacilityType, str],
        owner_party_id: str,
        location: Location,
        permit_ids: Optional[List[str]] = None,
    ) -> Facility:
        self.get_party(owner_party_id)
        facility = Facility(
            facility_id=new_id(),
            name=name,
            facility_type=facility_type,
            owner_party_id=owner_party_id,
            location=location,
            permit_ids=list(permit_ids or []),
            created_at=format_datetime(self.clock()),
        )
        self.store.save_facility(facility)
        self._audit(AuditAction.CREATE, "Facility", facility.facility_id, facility.to_dict())
        logger.info("Registered facility %s (%s)", facility.facility_id, facility.facility_type.value)
        return facility

    def get_facility(self, facility_id: str) -> Facility:
        facility = self.store.load_facility(facility_id)
        if facility is None:
            raise NotFound("Facility", facility_id)
        return facility

    def list_facilities(self) -> List[Facility]:
        return self.store.list_facilities()

    def register_document(
        self,
        document_type: Union[DocumentType, str],
        file_name: str,
        content: Optional[Union[bytes, str]] = None,
        content_fingerprint: Optional[str] = None,
        confidentiality: Union[ConfidentialityLevel, str] = ConfidentialityLevel.RESTRICTED,
        issuer_party_id: Optional[str] = None,
        related_batch_id: Optional[str] = None,
        related_event_id: Optional[str] = None,
        storage_uri: Optional[str] = None,
        issued_date: Optional[str] = None,
    ) -> Document:
        """
        Register a document by its content fingerprint.

        Exactly one of content (hashed here, then discarded) or
        content_fingerprint (computed by the caller) must be given.
        """
        if (content is None) == (content_fingerprint is None):
            raise ValidationError("Provide exactly one of content or contentFingerprint")
        if content is not None:
            digest = fingerprint_of_bytes(content)
        else:
            try:
                digest = parse_fingerprint(content_fingerprint)
            except ValueError as e:
                raise ValidationError(str(e))

        if issuer_party_id:
            self.get_party(issuer_party_id)
        if related_batch_id:
            self.get_batch(related_batch_id)
        if related_event_id:
            self.get_event(related_event_id)

        document = Document(
            document_id=new_id(),
            document_type=document_type,
            file_name=file_name,
            fingerprint=digest,
            confidentiality=confidentiality,
            issuer_party_id=issuer_party_id,
            related_batch_id=related_batch_id,
            related_event_id=related_event_id,
            storage_uri=storage_uri,
            issued_date=issued_date,
            created_at=format_datetime(self.clock()),
        )
        self.store.save_document(document)
        self._audit(AuditAction.CREATE, "Document", document.document_id, document.to_dict())
        logger.info("Registered document %s (%s)", document.document_id, document.document_type.value)
        return document

    def verify_document(self, document_id: str, content: Union[bytes, str]) -> Dict[str, Any]:
        """Check presented content against the registered fingerprint."""
        document = self.get_document(document_id)
        computed = fingerprint_of_bytes(content)
        return {
            "documentId": document.document_id,
            "fileName": document.file_name,
            "valid": fingerprints_match(document.fingerprint, computed),
            "storedFingerprint": document.fingerprint,
            "computedFingerprint": computed,
        }

    def get_document(self, document_id: str) -> Document:
        document = self.store.load_document(document_id)
        if document is None:
            raise NotFound("Document", document_id)
        return document

    def list_documents(self, batch_id: Optional[str] = None) -> List[Document]:
        return self.store.list_documents(batch_id)

    def issue_credential(
        self,
        credential_type: Union[CredentialType, str],
        issuer_party_id: str,
        claims_summary: str,
        subject_batch_id: Optional[str] = None,
        subject_facility_id: Optional[str] = None,
        supporting_document_ids: Optional[List[str]] = None,
    ) -> Credential:
        """
        Record an issuer's attestation about a batch or facility.

        Raises:
            NotFound: if the issuer, subject or a supporting document is unknown
            ValidationError: if neither a batch nor a facility is named
        """
        supporting = list(supporting_document_ids or [])
        self._check_references(
            party_ids=[issuer_party_id],
            facility_ids=[subject_facility_id],
            document_ids=supporting,
        )
        if subject_batch_id:
            self.get_batch(subject_batch_id)
        credential = Credential(
            credential_id=new_id(),
            credential_type=credential_type,
            issuer_party_id=issuer_party_id,
            claims_summary=claims_summary,
            subject_batch_id=subject_batch_id,
            subject_facility_id=subject_facility_id,
            supporting_document_ids=supporting,
            issued_at=format_datetime(self.clock()),
        )
        self.store.save_credential(credential)
        self._audit(AuditAction.CREATE, "Credential", credential.credential_id, credential.to_dict())
        logger.info("Issued credential %s (%s)", credential.credential_id, credential.credential_type.value)
        return credential

    def get_credential(self, credential_id: str) -> Credential:
        credential = self.store.load_credential(credential_id)
        if credential is None:
            raise NotFound("Credential", credential_id)
        return credential

    def list_credentials(self, batch_id: Optional[str] = None) -> List[Credential]:
        return self.store.list_credentials(batch_id)

    def _check_references(
        self,
        party_ids: Iterable[Optional[str]] = (),
        facility_ids: Iterable[Optional[str]] = (),
        document_ids: Iterable[str] = (),
    ) -> None:
        for party_id in party_ids:
            if party_id and self.store.load_party(party_id) is None:
                raise NotFound("Party", party_id)
        for facility_id in facility_ids:
            if facility_id and self.store.load_facility(facility_id) is None:
                raise NotFound("Facility", facility_id)
        for document_id in document_ids:
            if self.store.load_document(document_id) is None:
                raise NotFound("Document", document_id)

    # =========================================================================
    # Batches and events
    # =========================================================================

    def create_batch(self, batch_input: BatchInput, document_ids: Optional[List[str]] = None) -> Tuple[Batch, Event]:
        """
        Create a batch together with its Create event.

        Both are fingerprinted and persisted before this returns; anchors
        for both are dispatched afterwards.

        Raises:
            NotFound: if the origin facility, owner or a document is unknown
            ValidationError: if the external reference is already in use
        """
        document_ids = list(document_ids or [])
        self._check_references(
            party_ids=[batch_input.owner_party_id],
            facility_ids=[batch_input.origin_facility_id],
            document_ids=document_ids,
        )
        if self.store.find_batch_by_reference(batch_input.external_reference) is not None:
            raise ValidationError(f"External reference {batch_input.external_reference} already in use")

        declared_assay = None
        if batch_input.declared_assay_value is not None:
            declared_assay = Assay(
                value=batch_input.declared_assay_value,
                unit=batch_input.declared_assay_unit or "g/t",
            )

        batch_id = new_id()
        with self._batch_lock(batch_id):
            created_at = format_datetime(self.clock())
            batch = Batch(
                batch_id=batch_id,
                external_reference=batch_input.external_reference,
                commodity_type=batch_input.commodity_type,
                origin_facility_id=batch_input.origin_facility_id,
                owner_party_id=batch_input.owner_party_id,
                created_at=created_at,
                quantity=Quantity(weight=batch_input.weight, unit=batch_input.weight_unit or "kg"),
                declared_assay=declared_assay,
                document_ids=document_ids,
                notes=batch_input.notes,
            )
            event = Event(
                event_id=new_id(),
                event_type=EventType.CREATE,
                timestamp=created_at,
                batch_id=batch_id,
                sequence=0,
                to_party_id=batch.owner_party_id,
                to_facility_id=batch.origin_facility_id,
                quantity=batch.quantity,
                document_ids=list(document_ids),
                notes=batch_input.notes,
                fingerprint_version=CURRENT_SCHEME_VERSION,
            )
            event.fingerprint = compute_event_fingerprint(event)
            batch.event_ids.append(event.event_id)
            batch.fingerprint_version = CURRENT_SCHEME_VERSION
            batch.fingerprint = compute_batch_fingerprint(batch)
            self.store.record_batch(batch, event)

        self._audit(AuditAction.CREATE, "Batch", batch_id, batch.to_dict())
        self._audit(AuditAction.CREATE, "Event", event.event_id, event.to_dict())
        logger.info("Created batch %s (%s)", batch_id, batch.external_reference)
        self._dispatch_anchor(batch_id, "batch", batch.fingerprint)
        self._dispatch_anchor(event.event_id, "event", event.fingerprint)
        return self.get_batch(batch_id), self.get_event(event.event_id)

    def append_event(self, batch_id: str, event_input: EventInput) -> Event:
        """
        Append a custody event to a batch.

        Raises:
            NotFound: if the batch or any referenced party/facility/document
                is unknown
            InvalidTransition: if the event type is illegal in the batch's
                current status; nothing is fingerprinted or persisted
            ValidationError: if a field required by the event type is missing
        """
        with self._batch_lock(batch_id):
            batch = self.get_batch(batch_id)
            last = self.store.load_event(batch.event_ids[-1]) if batch.event_ids else None
            event = build_event(
                batch,
                event_input,
                event_id=new_id(),
                timestamp=self._timestamp_after(last.timestamp if last else None),
                sequence=len(batch.event_ids),
            )
            self._check_references(
                party_ids=[event.from_party_id, event.to_party_id],
                facility_ids=[event.from_facility_id, event.to_facility_id],
                document_ids=event.document_ids,
            )

            assay = None
            if event.event_type == EventType.ASSAY_FINALIZED:
                assay = Assay(value=event_input.assay_value, unit=event_input.assay_unit or "g/t")

            event.fingerprint_version = CURRENT_SCHEME_VERSION
            event.fingerprint = compute_event_fingerprint(event)
            updated = apply_event(batch, event, assay)
            updated.fingerprint_version = CURRENT_SCHEME_VERSION
            updated.fingerprint = compute_batch_fingerprint(updated)
            self.store.record_event(event, updated)

        self._audit(AuditAction.CREATE, "Event", event.event_id, event.to_dict())
        self._audit(AuditAction.UPDATE, "Batch", batch_id, updated.to_dict())
        logger.info(
            "Appended %s to batch %s: %s -> %s",
            event.event_type.value, batch_id, batch.status.value, updated.status.value,
        )
        self._dispatch_anchor(event.event_id, "event", event.fingerprint)
        return self.get_event(event.event_id)

    def close_batch(self, batch_id: str) -> Batch:
        """Explicit close action; CLOSED is terminal."""
        with self._batch_lock(batch_id):
            batch = self.get_batch(batch_id)
            batch.status = plan_close(batch)
            batch.fingerprint_version = CURRENT_SCHEME_VERSION
            batch.fingerprint = compute_batch_fingerprint(batch)
            self.store.update_batch(batch)
        self._audit(AuditAction.UPDATE, "Batch", batch_id, batch.to_dict())
        logger.info("Closed batch %s", batch_id)
        return batch

    def get_batch(self, batch_id: str) -> Batch:
        batch = self.store.load_batch(batch_id)
        if batch is None:
            raise NotFound("Batch", batch_id)
        return batch

    def get_batch_by_reference(self, external_reference: str) -> Batch:
        batch = self.store.find_batch_by_reference(external_reference)
        if batch is None:
            raise NotFound("Batch", external_reference)
        return batch

    def list_batches(self, status: Optional[Union[BatchStatus, str]] = None) -> List[Batch]:
        if status is not None:
            status = coerce_enum(BatchStatus, status, "status")
        return self.store.list_batches(status)

    def get_event(self, event_id: str) -> Event:
        event = self.store.load_event(event_id)
        if event is None:
            raise NotFound("Event", event_id)
        return event

    def get_events(self, batch_id: str) -> List[Event]:
        self.get_batch(batch_id)
        return self.store.load_events_for_batch(batch_id)

    def allowed_events(self, batch_id: str) -> List[str]:
        return [t.value for t in allowed_event_types(self.get_batch(batch_id))]

    # =========================================================================
    # Verification and reporting
    # =========================================================================

    def verify_batch(self, batch_id: str) -> VerificationReport:
        return self.verifier.verify(batch_id)

    def chain_of_custody(self, batch_id: str) -> Dict[str, Any]:
        """Human-oriented timeline with parties, facilities and documents resolved."""
        batch = self.get_batch(batch_id)
        events = self.store.load_events_for_batch(batch_id)
        documents = self._batch_documents(batch)
        gateway = self.dispatcher.gateway if self.dispatcher else None

        def party_ref(party_id):
            party = self.store.load_party(party_id) if party_id else None
            return {"id": party.party_id, "name": party.legal_name} if party else None

        def facility_ref(facility_id):
            facility = self.store.load_facility(facility_id) if facility_id else None
            return {"id": facility.facility_id, "name": facility.name} if facility else None

        timeline = []
        for event in events:
            ref = event.anchor.external_ref if event.anchor else None
            timeline.append({
                "eventId": event.event_id,
                "eventType": event.event_type.value,
                "timestamp": event.timestamp,
                "from": {"party": party_ref(event.from_party_id), "facility": facility_ref(event.from_facility_id)},
                "to": {"party": party_ref(event.to_party_id), "facility": facility_ref(event.to_facility_id)},
                "quantity": event.quantity.to_dict() if event.quantity else None,
                "notes": event.notes,
                "documents": [
                    {"id": d.document_id, "type": d.document_type.value, "fileName": d.file_name, "fingerprint": d.fingerprint}
                    for d in (self.store.load_document(i) for i in event.document_ids) if d
                ],
                "fingerprint": event.fingerprint,
                "anchorState": event.anchor.state.value if event.anchor else None,
                "externalRef": ref,
                "explorerUrl": gateway.explorer_url(ref) if gateway and ref else None,
            })

        origin = self.store.load_facility(batch.origin_facility_id)
        owner = self.store.load_party(batch.owner_party_id)
        return {
            "batch": {
                "batchId": batch.batch_id,
                "referenceNumber": batch.external_reference,
                "commodityType": batch.commodity_type,
                "quantity": batch.quantity.to_dict(),
                "declaredAssay": batch.declared_assay.to_dict() if batch.declared_assay else None,
                "status": batch.status.value,
                "createdAt": batch.created_at,
            },
            "originFacility": {
                "id": origin.facility_id,
                "name": origin.name,
                "type": origin.facility_type.value,
                "location": origin.location.to_dict(),
            } if origin else None,
            "currentCustodian": {
                "id": owner.party_id,
                "name": owner.legal_name,
                "type": owner.party_type.value,
            } if owner else None,
            "timeline": timeline,
            "documentCount": len(documents),
            "allDocuments": [
                {
                    "id": d.document_id,
                    "type": d.document_type.value,
                    "fileName": d.file_name,
                    "fingerprint": d.fingerprint,
                    "confidentiality": d.confidentiality.value,
                }
                for d in documents
            ],
            "credentials": [
                {
                    "id": c.credential_id,
                    "type": c.credential_type.value,
                    "issuer": party_ref(c.issuer_party_id),
                    "claims": c.claims_summary,
                    "issuedAt": c.issued_at,
                }
                for c in self.store.list_credentials(batch_id)
            ],
            "verificationStatus": custody_status(batch, events, documents),
        }

    def _batch_documents(self, batch: Batch) -> List[Document]:
        docs = {d.document_id: d for d in self.store.list_documents(batch.batch_id)}
        for document_id in batch.document_ids:
            if document_id not in docs:
                doc = self.store.load_document(document_id)
                if doc is not None:
                    docs[document_id] = doc
        return list(docs.values())

    def export_batch_package(self, batch_id: str) -> Dict[str, Any]:
        """
        Self-contained package for an external auditor.

        Carries every stored fingerprint and anchor reference so the package
        can be verified offline (see verifier.verify_package).
        """
        batch = self.get_batch(batch_id)
        events = self.store.load_events_for_batch(batch_id)
        documents = self._batch_documents(batch)

        party_ids = {batch.owner_party_id}
        facility_ids = {batch.origin_facility_id}
        for e in events:
            party_ids.update(i for i in (e.from_party_id, e.to_party_id) if i)
            facility_ids.update(i for i in (e.from_facility_id, e.to_facility_id) if i)
        credentials = self.store.list_credentials(batch_id)
        for d in documents:
            if d.issuer_party_id:
                party_ids.add(d.issuer_party_id)
        party_ids.update(c.issuer_party_id for c in credentials)
        facilities = [f for f in (self.store.load_facility(i) for i in sorted(facility_ids)) if f]
        party_ids.update(f.owner_party_id for f in facilities)
        parties = [p for p in (self.store.load_party(i) for i in sorted(party_ids)) if p]

        return {
            "exportVersion": EXPORT_VERSION,
            "exportedAt": format_datetime(self.clock()),
            "batch": batch.to_dict(),
            "events": [e.to_dict() for e in events],
            "documents": [d.to_dict() for d in documents],
            "credentials": [c.to_dict() for c in credentials],
            "parties": [p.to_dict() for p in parties],
            "facilities": [f.to_dict() for f in facilities],
            "verification": self.verify_batch(batch_id).to_dict(),
        }

    def import_package(self, package: Dict[str, Any]) -> Dict[str, int]:
        """
        Load an exported package (single batch or full dump) into the store.

        Stored fingerprints and anchors are kept exactly as exported, so the
        imported records verify the same way they did at the source.

        Raises:
            ValidationError: if the package is malformed or collides with
                records already stored
        """
        if not isinstance(package, dict):
            raise ValidationError("Package must be a JSON object")
        dump = package_as_dump(package)
        try:
            counts = self.store.import_package(dump)
        except (KeyError, TypeError, AttributeError) as e:
            raise ValidationError(f"Malformed package: {e!r}")
        for batch in dump.get("batches") or []:
            self._audit(AuditAction.IMPORT, "Batch", batch["batchId"], batch)
        logger.info("Imported package: %s", counts)
        return counts

    # =========================================================================
    # Anchors
    # =========================================================================

    def _store_anchor(self, record: AnchorRecord) -> None:
        if not self.store.attach_anchor(record.subject_id, record):
            logger.warning("Anchor result for unknown subject %s dropped", record.subject_id)
            return
        logger.info("Anchor %s for %s %s", record.state.value, record.subject_type, record.subject_id)
        if self.anchor_listener is not None:
            self.anchor_listener(record)

    def _dispatch_anchor(self, subject_id: str, subject_type: str, digest: str) -> None:
        if self.dispatcher is None:
            return
        record = AnchorRecord(subject_id=subject_id, subject_type=subject_type, fingerprint=digest)
        record.mark_submitted(simulated=self.dispatcher.gateway.simulated)
        self.store.attach_anchor(subject_id, record)
        try:
            self.dispatcher.dispatch(record)
        except AnchorUnavailable as e:
            logger.warning("Anchor dispatch for %s deferred: %s", subject_id, e)

    def _load_anchor(self, subject_id: str) -> AnchorRecord:
        subject = self.store.load_event(subject_id) or self.store.load_batch(subject_id)
        if subject is None:
            raise NotFound("Subject", subject_id)
        if subject.anchor is None:
            raise NotFound("Anchor", subject_id)
        return subject.anchor

    def refresh_anchor(self, subject_id: str) -> AnchorRecord:
        """
        Re-check (or resubmit) the anchor of a batch or event synchronously.

        Raises:
            NotFound: if the subject or its anchor record does not exist
            AnchorUnavailable: if anchoring is disabled on this engine
        """
        if self.dispatcher is None:
            raise AnchorUnavailable("Anchoring is not configured", retryable=False)
        record = self.dispatcher.refresh(self._load_anchor(subject_id))
        self._store_anchor(record)
        return record

    def get_anchor(self, subject_id: str) -> AnchorRecord:
        return self._load_anchor(subject_id)

    def wait_for_anchors(self, timeout: Optional[float] = None) -> bool:
        if self.dispatcher is None:
            return True
        return self.dispatcher.wait(timeout)

    def close(self) -> None:
        if self.dispatcher is not None:
            self.dispatcher.shutdown(wait=True)


def custody_status(batch: Batch, events: List[Event], documents: List[Document]) -> Dict[str, str]:
    """Display status of a batch's custody record (not an integrity verdict)."""
    if batch.status == BatchStatus.DISPUTE:
        return {"status": "DISPUTED", "message": "Batch has an active dispute"}
    if not any(e.event_type == EventType.CREATE for e in events):
        return {"status": "INCOMPLETE", "message": "Missing creation event"}
    if not documents:
        return {"status": "INCOMPLETE", "message": "No supporting documents attached"}
    if batch.status == BatchStatus.CLOSED:
        return {"status": "CLOSED", "message": "Batch is closed"}
    if not all(e.anchor is not None and e.anchor.external_ref for e in events):
        return {"status": "PARTIAL", "message": "Some events not yet anchored"}
    return {"status": "VERIFIED", "message": "All events recorded and anchored"}
