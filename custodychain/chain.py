"""
Event Chain Rules

Builds the exact payloads that are fingerprinted for events and batches, and
enforces the batch status state machine.

Payload policies differ per entity on purpose:

- Event payloads normalize every absent optional field to an explicit null.
  "No value was supplied" is itself part of the provenance record.
- Batch payloads omit absent optional fields entirely.

Both policies are applied through this module only, so they cannot drift.

State machine:

    Created --Ship--> InTransit --Transfer--> InTransit (owner reassigned)
    InTransit --Receive--> Received --Ship--> InTransit
    {Created, InTransit, Received} --Dispute--> Dispute --Resolve--> (prior)
    {Created, Received} --close--> Closed (terminal)

InspectTest and AssayFinalized leave the status unchanged.
"""

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .canonicalization import omit_none
from .errors import InvalidTransition, ValidationError
from .hashing import CURRENT_SCHEME_VERSION, fingerprint
from .models import (
    Assay,
    Batch,
    BatchStatus,
    Event,
    EventInput,
    EventType,
    Quantity,
    UnreadableEvent,
)


ACTIVE_STATES: FrozenSet[BatchStatus] = frozenset({
    BatchStatus.CREATED,
    BatchStatus.IN_TRANSIT,
    BatchStatus.RECEIVED,
})

ALLOWED_FROM: Dict[EventType, FrozenSet[BatchStatus]] = {
    EventType.SHIP: frozenset({BatchStatus.CREATED, BatchStatus.RECEIVED}),
    EventType.TRANSFER: frozenset({BatchStatus.IN_TRANSIT}),
    EventType.RECEIVE: frozenset({BatchStatus.IN_TRANSIT}),
    EventType.INSPECT_TEST: ACTIVE_STATES,
    EventType.ASSAY_FINALIZED: ACTIVE_STATES,
    EventType.DISPUTE: ACTIVE_STATES,
    EventType.RESOLVE: frozenset({BatchStatus.DISPUTE}),
}

CLOSABLE_FROM: FrozenSet[BatchStatus] = frozenset({BatchStatus.CREATED, BatchStatus.RECEIVED})

# Event types that name a receiving party
_NEEDS_RECIPIENT = frozenset({EventType.SHIP, EventType.TRANSFER, EventType.RECEIVE})

_EVENT_PAYLOAD_KEYS = (
    "eventId", "eventType", "timestamp", "batchId", "fromPartyId", "toPartyId",
    "fromFacilityId", "toFacilityId", "quantity", "documentIds",
)


# =============================================================================
# PAYLOADS
# =============================================================================

def event_payload(event: Event) -> Dict[str, Any]:
    """Fingerprint input for an event; absent optionals become explicit null."""
    if isinstance(event, UnreadableEvent):
        return stored_event_payload(event.body)
    return {
        "eventId": event.event_id,
        "eventType": event.event_type.value,
        "timestamp": event.timestamp,
        "batchId": event.batch_id,
        "fromPartyId": event.from_party_id,
        "toPartyId": event.to_party_id,
        "fromFacilityId": event.from_facility_id,
        "toFacilityId": event.to_facility_id,
        "quantity": event.quantity.to_dict() if event.quantity else None,
        "documentIds": list(event.document_ids),
    }


def stored_event_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    """The same payload, read from a stored camelCase body that may not decode."""
    payload = {key: body.get(key) for key in _EVENT_PAYLOAD_KEYS}
    payload["documentIds"] = list(body.get("documentIds") or [])
    return payload


def batch_payload(batch: Batch) -> Dict[str, Any]:
    """Fingerprint input for a batch; absent optionals are omitted."""
    return omit_none({
        "batchId": batch.batch_id,
        "externalReferenceNumber": batch.external_reference,
        "commodityType": batch.commodity_type,
        "originFacilityId": batch.origin_facility_id,
        "ownerPartyId": batch.owner_party_id,
        "creationTimestamp": batch.created_at,
        "quantity": batch.quantity.to_dict() if batch.quantity else None,
        "declaredAssay": batch.declared_assay.to_dict() if batch.declared_assay else None,
    })


def compute_event_fingerprint(event: Event, version: Optional[str] = None) -> str:
    """
    Fingerprint an event under the given scheme version.

    Defaults to the version the event was stored with, falling back to the
    current version for events not yet fingerprinted.
    """
    version = version or event.fingerprint_version or CURRENT_SCHEME_VERSION
    return fingerprint(event_payload(event), version)


def compute_batch_fingerprint(batch: Batch, version: Optional[str] = None) -> str:
    version = version or batch.fingerprint_version or CURRENT_SCHEME_VERSION
    return fingerprint(batch_payload(batch), version)


# =============================================================================
# STATE MACHINE
# =============================================================================

def plan_transition(batch: Batch, event_type: EventType) -> BatchStatus:
    """
    Return the status the batch will hold after an event of this type.

    Raises:
        InvalidTransition: if the event type is not legal in the current status
    """
    status = batch.status
    if event_type == EventType.CREATE or status == BatchStatus.CLOSED:
        raise InvalidTransition(status.value, event_type.value, batch.batch_id)

    allowed = ALLOWED_FROM.get(event_type, frozenset())
    if status not in allowed:
        raise InvalidTransition(status.value, event_type.value, batch.batch_id)

    if event_type == EventType.SHIP:
        return BatchStatus.IN_TRANSIT
    if event_type == EventType.RECEIVE:
        return BatchStatus.RECEIVED
    if event_type == EventType.DISPUTE:
        return BatchStatus.DISPUTE
    if event_type == EventType.RESOLVE:
        if batch.prior_status is None or batch.prior_status not in ACTIVE_STATES:
            raise InvalidTransition(status.value, event_type.value, batch.batch_id)
        return batch.prior_status
    return status


def plan_close(batch: Batch) -> BatchStatus:
    """The explicit close action; the only way into CLOSED."""
    if batch.status not in CLOSABLE_FROM:
        raise InvalidTransition(batch.status.value, "Close", batch.batch_id)
    return BatchStatus.CLOSED


def allowed_event_types(batch: Batch) -> List[EventType]:
    """Event types that may legally be appended right now."""
    out = []
    for event_type, states in ALLOWED_FROM.items():
        if batch.status in states:
            if event_type == EventType.RESOLVE and batch.prior_status not in ACTIVE_STATES:
                continue
            out.append(event_type)
    return out


# =============================================================================
# EVENT CONSTRUCTION
# =============================================================================

def build_event(
    batch: Batch,
    event_input: EventInput,
    event_id: str,
    timestamp: str,
    sequence: int,
) -> Event:
    """
    Construct (but do not fingerprint) the next event for a batch.

    Fills in defaults from the batch the way custody hand-offs are recorded:
    the sender of Ship/Transfer/Receive is the current owner, and the quantity
    snapshot is the batch quantity unless a measured weight is supplied.

    Raises:
        InvalidTransition: if the event type is illegal for the batch status
        ValidationError: if a required field for this event type is missing
    """
    event_type = event_input.event_type
    plan_transition(batch, event_type)

    if event_type in _NEEDS_RECIPIENT and not event_input.to_party_id:
        raise ValidationError(f"{event_type.value} requires toPartyId")
    if event_type == EventType.ASSAY_FINALIZED and event_input.assay_value is None:
        raise ValidationError("AssayFinalized requires assayValue")

    from_party = event_input.from_party_id
    from_facility = event_input.from_facility_id
    if event_type in _NEEDS_RECIPIENT:
        from_party = batch.owner_party_id
    if event_type == EventType.SHIP and not from_facility:
        from_facility = batch.origin_facility_id

    quantity: Optional[Quantity] = None
    if event_type not in (EventType.DISPUTE, EventType.RESOLVE):
        if event_input.weight is not None:
            quantity = Quantity(
                weight=event_input.weight,
                unit=event_input.weight_unit or batch.quantity.unit,
            )
        else:
            quantity = batch.quantity

    return Event(
        event_id=event_id,
        event_type=event_type,
        timestamp=timestamp,
        batch_id=batch.batch_id,
        sequence=sequence,
        from_party_id=from_party,
        to_party_id=event_input.to_party_id,
        from_facility_id=from_facility,
        to_facility_id=event_input.to_facility_id,
        quantity=quantity,
        document_ids=list(event_input.document_ids),
        notes=event_input.notes,
    )


def apply_event(batch: Batch, event: Event, assay: Optional[Assay] = None) -> Batch:
    """
    Return a copy of the batch with the event applied.

    The input batch is not modified.
    """
    new_status = plan_transition(batch, event.event_type)
    updated = replace(
        batch,
        status=new_status,
        event_ids=list(batch.event_ids) + [event.event_id],
        document_ids=list(batch.document_ids),
    )

    if event.event_type == EventType.DISPUTE:
        updated.prior_status = batch.status
    elif event.event_type == EventType.RESOLVE:
        updated.prior_status = None
    elif event.event_type in (EventType.TRANSFER, EventType.RECEIVE):
        updated.owner_party_id = event.to_party_id

    if event.event_type == EventType.RECEIVE and event.quantity is not None:
        updated.quantity = event.quantity
    if event.event_type == EventType.ASSAY_FINALIZED and assay is not None:
        updated.declared_assay = assay

    for doc_id in event.document_ids:
        if doc_id not in updated.document_ids:
            updated.document_ids.append(doc_id)

    return updated


# =============================================================================
# ORDERING
# =============================================================================

def parse_timestamp(value: str) -> datetime:
    """Parse a stored ISO-8601 timestamp (Z suffix accepted)."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def timestamp_error(value: Any) -> Optional[str]:
    """Why a stored timestamp cannot be used for ordering, or None."""
    try:
        parsed = parse_timestamp(value)
    except (AttributeError, TypeError, ValueError):
        return f"timestamp {value!r} is not an ISO-8601 value"
    if parsed.tzinfo is None:
        return f"timestamp {value!r} has no timezone"
    return None


def event_sort_key(event: Event):
    return (parse_timestamp(event.timestamp), event.sequence)


def order_events(events: Iterable[Event]) -> List[Event]:
    """
    Order events by timestamp, breaking ties by creation sequence.

    If any timestamp is unreadable the whole list falls back to sequence
    order.
    """
    events = list(events)
    if any(timestamp_error(e.timestamp) for e in events):
        return sorted(events, key=lambda e: e.sequence)
    return sorted(events, key=event_sort_key)
