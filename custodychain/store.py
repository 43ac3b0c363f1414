"""
Custody Store

Persistence contract consumed by the engine, plus an in-memory reference
implementation. Stores are dumb: they never validate transitions or compute
fingerprints, they only keep what they are given. load_* methods return None
for unknown ids; turning that into NotFound is the engine's job.

Anchor records are kept apart from the entities they corroborate. Writing a
batch never touches its anchor; only attach_anchor does.
"""

import copy
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .anchoring import AnchorRecord
from .chain import order_events
from .errors import ValidationError
from .models import (
    AuditEntry,
    Batch,
    BatchStatus,
    Credential,
    Document,
    Event,
    Facility,
    Party,
)


class CustodyStore(ABC):
    """
    Abstract persistence for parties, facilities, documents, credentials,
    batches, events and the audit trail.

    Implementations must be safe to call from several threads. Events and
    audit entries are append-only: there is no update or delete for either.
    """

    # Parties / facilities / documents / credentials

    @abstractmethod
    def save_party(self, party: Party) -> None:
        pass

    @abstractmethod
    def load_party(self, party_id: str) -> Optional[Party]:
        pass

    @abstractmethod
    def list_parties(self) -> List[Party]:
        pass

    @abstractmethod
    def save_facility(self, facility: Facility) -> None:
        pass

    @abstractmethod
    def load_facility(self, facility_id: str) -> Optional[Facility]:
        pass

    @abstractmethod
    def list_facilities(self) -> List[Facility]:
        pass

    @abstractmethod
    def save_document(self, document: Document) -> None:
        pass

    @abstractmethod
    def load_document(self, document_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    def list_documents(self, batch_id: Optional[str] = None) -> List[Document]:
        pass

    @abstractmethod
    def save_credential(self, credential: Credential) -> None:
        pass

    @abstractmethod
    def load_credential(self, credential_id: str) -> Optional[Credential]:
        pass

    @abstractmethod
    def list_credentials(self, batch_id: Optional[str] = None) -> List[Credential]:
        pass

    # Batches

    @abstractmethod
    def save_batch(self, batch: Batch) -> None:
        """Insert a new batch. Duplicate ids or external references are rejected."""
        pass

    @abstractmethod
    def update_batch(self, batch: Batch) -> None:
        """Overwrite a batch's fields. Its anchor record is left as stored."""
        pass

    @abstractmethod
    def load_batch(self, batch_id: str) -> Optional[Batch]:
        pass

    @abstractmethod
    def find_batch_by_reference(self, external_reference: str) -> Optional[Batch]:
        pass

    @abstractmethod
    def list_batches(self, status: Optional[BatchStatus] = None) -> List[Batch]:
        pass

    # Events

    @abstractmethod
    def append_event(self, event: Event) -> None:
        pass

    @abstractmethod
    def load_event(self, event_id: str) -> Optional[Event]:
        pass

    @abstractmethod
    def load_events_for_batch(self, batch_id: str) -> List[Event]:
        """All events of a batch ordered by (timestamp, sequence)."""
        pass

    def load_events_for_verification(self, batch_id: str) -> list:
        """
        Like load_events_for_batch, but a stored body that no longer decodes
        comes back as an UnreadableEvent instead of raising.
        """
        return self.load_events_for_batch(batch_id)

    # Anchors

    @abstractmethod
    def attach_anchor(self, subject_id: str, record: AnchorRecord) -> bool:
        """
        Store the anchor record of a batch or event.

        Returns False if no batch or event has that id.
        """
        pass

    # Audit trail

    @abstractmethod
    def append_audit(self, entry: AuditEntry) -> None:
        pass

    @abstractmethod
    def load_audit(self, entity_id: Optional[str] = None) -> List[AuditEntry]:
        """Audit entries in the order they were written, optionally for one entity."""
        pass

    def record_event(self, event: Event, batch: Batch) -> None:
        """Persist a new event together with the batch it updated."""
        self.append_event(event)
        self.update_batch(batch)

    def record_batch(self, batch: Batch, event: Event) -> None:
        """Persist a new batch together with its creation event."""
        self.save_batch(batch)
        self.append_event(event)

    # Packages

    def export(self) -> Dict[str, Any]:
        """Dump everything as camelCase dictionaries."""
        batches = self.list_batches()
        events = []
        for batch in batches:
            events.extend(e.to_dict() for e in self.load_events_for_batch(batch.batch_id))
        return {
            "parties": [p.to_dict() for p in self.list_parties()],
            "facilities": [f.to_dict() for f in self.list_facilities()],
            "documents": [d.to_dict() for d in self.list_documents()],
            "credentials": [c.to_dict() for c in self.list_credentials()],
            "batches": [b.to_dict() for b in batches],
            "events": events,
        }

    def import_package(self, data: Dict[str, Any]) -> Dict[str, int]:
        """
        Load a previously exported dump.

        Stored fingerprints and anchors are kept as they are, never
        recomputed, so an imported package can be verified independently.
        """
        loaders = [
            ("parties", Party.from_dict, self.save_party),
            ("facilities", Facility.from_dict, self.save_facility),
            ("documents", Document.from_dict, self.save_document),
            ("credentials", Credential.from_dict, self.save_credential),
            ("batches", Batch.from_dict, self.save_batch),
            ("events", Event.from_dict, self.append_event),
        ]
        counts = {}
        for key, decode, save in loaders:
            items = data.get(key) or []
            for item in items:
                save(decode(item))
            counts[key] = len(items)
        return counts


class InMemoryStore(CustodyStore):
    """
    In-memory store for development, tests and offline verification.

    Everything handed in or out is copied, so callers can never mutate
    stored state behind the store's back.
    """

    def __init__(self):
        self._parties: Dict[str, Party] = {}
        self._facilities: Dict[str, Facility] = {}
        self._documents: Dict[str, Document] = {}
        self._credentials: Dict[str, Credential] = {}
        self._batches: Dict[str, Batch] = {}
        self._references: Dict[str, str] = {}
        self._events: Dict[str, Event] = {}
        self._events_by_batch: Dict[str, List[str]] = {}
        self._anchors: Dict[str, AnchorRecord] = {}
        self._audit: List[AuditEntry] = []
        self._lock = threading.RLock()

    def clear(self) -> None:
        with self._lock:
            for table in (self._parties, self._facilities, self._documents, self._credentials,
                          self._batches, self._references, self._events, self._events_by_batch,
                          self._anchors, self._audit):
                table.clear()

    def _stored(self, entity):
        """Copy of an entity with its anchor detached."""
        stored = copy.deepcopy(entity)
        stored.anchor = None
        return stored

    def _loaded(self, entity, subject_id: str):
        if entity is None:
            return None
        loaded = copy.deepcopy(entity)
        anchor = self._anchors.get(subject_id)
        loaded.anchor = anchor.copy() if anchor else None
        return loaded

    def save_party(self, party: Party) -> None:
        with self._lock:
            self._parties[party.party_id] = copy.deepcopy(party)

    def load_party(self, party_id: str) -> Optional[Party]:
        with self._lock:
            return copy.deepcopy(self._parties.get(party_id))

    def list_parties(self) -> List[Party]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._parties.values()]

    def save_facility(self, facility: Facility) -> None:
        with self._lock:
            self._facilities[facility.facility_id] = copy.deepcopy(facility)

    def load_facility(self, facility_id: str) -> Optional[Facility]:
        with self._lock:
            return copy.deepcopy(self._facilities.get(facility_id))

    def list_facilities(self) -> List[Facility]:
        with self._lock:
            return [copy.deepcopy(f) for f in self._facilities.values()]

    def save_document(self, document: Document) -> None:
        with self._lock:
            self._documents[document.document_id] = copy.deepcopy(document)

    def load_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            return copy.deepcopy(self._documents.get(document_id))

    def list_documents(self, batch_id: Optional[str] = None) -> List[Document]:
        with self._lock:
            docs = self._documents.values()
            if batch_id is not None:
                docs = [d for d in docs if d.related_batch_id == batch_id]
            return [copy.deepcopy(d) for d in docs]

    def save_credential(self, credential: Credential) -> None:
        with self._lock:
            self._credentials[credential.credential_id] = copy.deepcopy(credential)

    def load_credential(self, credential_id: str) -> Optional[Credential]:
        with self._lock:
            return copy.deepcopy(self._credentials.get(credential_id))

    def list_credentials(self, batch_id: Optional[str] = None) -> List[Credential]:
        with self._lock:
            creds = self._credentials.values()
            if batch_id is not None:
                creds = [c for c in creds if c.subject_batch_id == batch_id]
            return [copy.deepcopy(c) for c in creds]

    def save_batch(self, batch: Batch) -> None:
        with self._lock:
            if batch.batch_id in self._batches:
                raise ValidationError(f"Batch {batch.batch_id} already exists")
            if batch.external_reference in self._references:
                raise ValidationError(f"External reference {batch.external_reference} already in use")
            self._batches[batch.batch_id] = self._stored(batch)
            self._references[batch.external_reference] = batch.batch_id
            self._events_by_batch.setdefault(batch.batch_id, [])
            if batch.anchor is not None:
                self._anchors[batch.batch_id] = batch.anchor.copy()

    def update_batch(self, batch: Batch) -> None:
        with self._lock:
            if batch.batch_id not in self._batches:
                raise ValidationError(f"Batch {batch.batch_id} does not exist")
            self._batches[batch.batch_id] = self._stored(batch)

    def load_batch(self, batch_id: str) -> Optional[Batch]:
        with self._lock:
            return self._loaded(self._batches.get(batch_id), batch_id)

    def find_batch_by_reference(self, external_reference: str) -> Optional[Batch]:
        with self._lock:
            batch_id = self._references.get(external_reference)
            return self.load_batch(batch_id) if batch_id else None

    def list_batches(self, status: Optional[BatchStatus] = None) -> List[Batch]:
        with self._lock:
            batches = self._batches.values()
            if status is not None:
                batches = [b for b in batches if b.status == status]
            return [self._loaded(b, b.batch_id) for b in batches]

    def append_event(self, event: Event) -> None:
        with self._lock:
            if event.event_id in self._events:
                raise ValidationError(f"Event {event.event_id} already exists")
            self._events[event.event_id] = self._stored(event)
            self._events_by_batch.setdefault(event.batch_id, []).append(event.event_id)
            if event.anchor is not None:
                self._anchors[event.event_id] = event.anchor.copy()

    def load_event(self, event_id: str) -> Optional[Event]:
        with self._lock:
            return self._loaded(self._events.get(event_id), event_id)

    def load_events_for_batch(self, batch_id: str) -> List[Event]:
        with self._lock:
            ids = self._events_by_batch.get(batch_id, [])
            return order_events(self._loaded(self._events[i], i) for i in ids)

    def record_event(self, event: Event, batch: Batch) -> None:
        with self._lock:
            self.append_event(event)
            self.update_batch(batch)

    def record_batch(self, batch: Batch, event: Event) -> None:
        with self._lock:
            self.save_batch(batch)
            self.append_event(event)

    def attach_anchor(self, subject_id: str, record: AnchorRecord) -> bool:
        with self._lock:
            if subject_id not in self._batches and subject_id not in self._events:
                return False
            self._anchors[subject_id] = record.copy()
            return True

    def append_audit(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(entry)

    def load_audit(self, entity_id: Optional[str] = None) -> List[AuditEntry]:
        with self._lock:
            if entity_id is None:
                return list(self._audit)
            return [e for e in self._audit if e.entity_id == entity_id]


def package_as_dump(package: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a single-batch export ({"batch": ...}) into the full dump shape."""
    if "batch" not in package:
        return package
    return {
        "parties": package.get("parties", []),
        "facilities": package.get("facilities", []),
        "documents": package.get("documents", []),
        "credentials": package.get("credentials", []),
        "batches": [package["batch"]],
        "events": package.get("events", []),
    }
