"""
Custody Chain Verification

Answers, for one batch, "is the recorded history internally consistent, and
is each anchor still corroborated?"

Steps:
1. Snapshot the batch and its events once.
2. Recompute the batch fingerprint and compare it to the stored one.
3. Recompute every event fingerprint under the scheme version the event was
   recorded with, and compare it to the stored one.
4. Ask the anchor gateway about every anchored subject (bounded timeout).
5. overall_valid = batch fingerprint valid AND every event hash matches AND
   the event list is complete and ordered.

Content mismatches are reported, never raised. Anchor results are a separate,
lower-severity signal: they never change overall_valid.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .anchoring import AnchorGateway, AnchorRecord, AnchorState, DisabledAnchorGateway
from .canonicalization import format_datetime
from .chain import compute_batch_fingerprint, compute_event_fingerprint, order_events, timestamp_error
from .errors import AnchorUnavailable, CustodyError, NotFound
from .hashing import fingerprints_match
from .models import Batch, Event, EventType, UnreadableEvent
from .store import CustodyStore, InMemoryStore, package_as_dump


logger = logging.getLogger(__name__)


@dataclass
class FingerprintMismatch:
    """A stored fingerprint that no longer matches its subject's content."""
    subject_id: str
    subject_type: str
    stored: Optional[str]
    computed: Optional[str]
    scheme_version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subjectId": self.subject_id,
            "subjectType": self.subject_type,
            "stored": self.stored,
            "computed": self.computed,
            "schemeVersion": self.scheme_version,
        }


@dataclass
class AnchorVerification:
    subject_id: str
    subject_type: str
    external_ref: Optional[str]
    state: str
    confirmed: bool
    block_number: Optional[int] = None
    simulated: bool = False
    fingerprint_matches: bool = True
    explorer_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subjectId": self.subject_id,
            "subjectType": self.subject_type,
            "externalRef": self.external_ref,
            "state": self.state,
            "confirmed": self.confirmed,
            "blockNumber": self.block_number,
            "simulated": self.simulated,
            "fingerprintMatches": self.fingerprint_matches,
            "explorerUrl": self.explorer_url,
            "error": self.error,
        }


@dataclass
class EventVerification:
    event_id: str
    event_type: str
    timestamp: str
    stored_fingerprint: Optional[str]
    computed_fingerprint: Optional[str]
    hash_match: bool
    mismatch: Optional[FingerprintMismatch] = None
    anchor_confirmed: Optional[bool] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "timestamp": self.timestamp,
            "storedFingerprint": self.stored_fingerprint,
            "computedFingerprint": self.computed_fingerprint,
            "hashMatch": self.hash_match,
            "mismatch": self.mismatch.to_dict() if self.mismatch else None,
            "anchorConfirmed": self.anchor_confirmed,
            "error": self.error,
        }


@dataclass
class VerificationReport:
    batch_id: str
    verified_at: str
    batch_fingerprint_valid: bool
    stored_batch_fingerprint: Optional[str]
    computed_batch_fingerprint: Optional[str]
    events: List[EventVerification] = field(default_factory=list)
    anchors: List[AnchorVerification] = field(default_factory=list)
    chain_issues: List[str] = field(default_factory=list)
    overall_valid: bool = False

    @property
    def event_count(self) -> int:
        return len(self.events)

    @property
    def mismatches(self) -> List[FingerprintMismatch]:
        out = []
        if not self.batch_fingerprint_valid:
            out.append(FingerprintMismatch(
                subject_id=self.batch_id,
                subject_type="batch",
                stored=self.stored_batch_fingerprint,
                computed=self.computed_batch_fingerprint,
            ))
        out.extend(e.mismatch for e in self.events if e.mismatch)
        return out

    @property
    def anchor_warnings(self) -> List[str]:
        warnings = []
        for a in self.anchors:
            if a.error:
                warnings.append(f"{a.subject_type} {a.subject_id}: {a.error}")
            elif not a.confirmed:
                warnings.append(f"{a.subject_type} {a.subject_id}: anchor {a.state.lower()}")
            if not a.fingerprint_matches:
                warnings.append(f"{a.subject_type} {a.subject_id}: anchored fingerprint differs from stored")
        return warnings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "verifiedAt": self.verified_at,
            "overallValid": self.overall_valid,
            "batchFingerprintValid": self.batch_fingerprint_valid,
            "storedBatchFingerprint": self.stored_batch_fingerprint,
            "computedBatchFingerprint": self.computed_batch_fingerprint,
            "eventCount": self.event_count,
            "events": [e.to_dict() for e in self.events],
            "anchors": [a.to_dict() for a in self.anchors],
            "chainIssues": list(self.chain_issues),
            "anchorWarnings": self.anchor_warnings,
        }


class IntegrityVerifier:
    """
    Verifies batches held in a CustodyStore.

    Reads are side-effect free. The only external calls are anchor
    confirmation checks. They run in parallel on a pool owned by one
    verification, each bounded by confirmation_timeout; any failure there
    becomes confirmed=False on the anchor result.
    """

    def __init__(
        self,
        store: CustodyStore,
        gateway: Optional[AnchorGateway] = None,
        confirmation_timeout: float = 5.0,
        max_check_workers: int = 16,
    ):
        self.store = store
        self.gateway = gateway or DisabledAnchorGateway()
        self.confirmation_timeout = confirmation_timeout
        self.max_check_workers = max_check_workers

    def verify(self, batch_id: str) -> VerificationReport:
        """
        Verify one batch.

        Stored events that no longer decode are reported as mismatches.

        Raises:
            NotFound: if the batch does not exist
        """
        batch = self.store.load_batch(batch_id)
        if batch is None:
            raise NotFound("Batch", batch_id)
        events = self.store.load_events_for_verification(batch_id)
        report = self.verify_snapshot(batch, events)
        logger.info(
            "Verified batch %s: overall_valid=%s events=%d",
            batch_id, report.overall_valid, report.event_count,
        )
        return report

    def verify_snapshot(self, batch: Batch, events: List[Event]) -> VerificationReport:
        """Verify a batch and the event list read alongside it."""
        events, chain_issues = self._reconcile(batch, events)

        stored = batch.fingerprint
        computed = None
        batch_valid = True
        try:
            computed = compute_batch_fingerprint(batch)
        except CustodyError as e:
            chain_issues.append(f"batch fingerprint cannot be computed: {e}")
            batch_valid = False
        if stored is not None and computed is not None:
            batch_valid = fingerprints_match(stored, computed)

        results = [self._verify_event(e) for e in events]

        # Batch anchors cover the creation fingerprint, not the current one
        subjects = []
        if batch.anchor is not None:
            subjects.append((batch.anchor, "batch", None, None))
        for event, result in zip(events, results):
            if event.anchor is not None:
                subjects.append((event.anchor, "event", event.fingerprint, result))
        anchors = self._verify_anchors(subjects)

        overall = batch_valid and all(r.hash_match for r in results) and not chain_issues
        return VerificationReport(
            batch_id=batch.batch_id,
            verified_at=format_datetime(datetime.now(timezone.utc)),
            batch_fingerprint_valid=batch_valid,
            stored_batch_fingerprint=stored,
            computed_batch_fingerprint=computed,
            events=results,
            anchors=anchors,
            chain_issues=chain_issues,
            overall_valid=overall,
        )

    def _reconcile(self, batch: Batch, events: List[Event]):
        """
        Match stored events against the batch's event list.

        Events with a sequence past the batch snapshot were appended after it
        was read and are left out, so the report reflects one point in time.
        """
        issues: List[str] = []
        listed = set(batch.event_ids)
        snapshot_size = len(batch.event_ids)
        by_id = {e.event_id: e for e in events}

        kept = []
        for event in events:
            if event.event_id in listed:
                kept.append(event)
            elif event.sequence >= snapshot_size:
                continue
            else:
                issues.append(f"event {event.event_id} is stored but not listed on the batch")
                kept.append(event)

        for event_id in batch.event_ids:
            if event_id not in by_id:
                issues.append(f"event {event_id} is listed on the batch but missing from storage")

        ordered = order_events(kept)
        present = [e.event_id for e in ordered if e.event_id in listed]
        expected = [i for i in batch.event_ids if i in by_id]
        if present != expected:
            issues.append("events are not in timestamp order")
        if ordered and ordered[0].event_type != EventType.CREATE:
            issues.append("first event is not a Create event")
        return ordered, issues

    def _verify_event(self, event) -> EventVerification:
        stored = event.fingerprint
        problem = event.error if isinstance(event, UnreadableEvent) else timestamp_error(event.timestamp)
        event_type = event.event_type if isinstance(event, UnreadableEvent) else event.event_type.value
        try:
            computed = compute_event_fingerprint(event)
        except (CustodyError, TypeError, ValueError) as e:
            return EventVerification(
                event_id=event.event_id,
                event_type=event_type,
                timestamp=event.timestamp,
                stored_fingerprint=stored,
                computed_fingerprint=None,
                hash_match=False,
                mismatch=FingerprintMismatch(event.event_id, "event", stored, None, event.fingerprint_version),
                error=problem or str(e),
            )

        match = stored is not None and fingerprints_match(stored, computed) and problem is None
        mismatch = None
        if not match:
            mismatch = FingerprintMismatch(event.event_id, "event", stored, computed, event.fingerprint_version)
        if problem is None and stored is None:
            problem = "no stored fingerprint"
        return EventVerification(
            event_id=event.event_id,
            event_type=event_type,
            timestamp=event.timestamp,
            stored_fingerprint=stored,
            computed_fingerprint=computed,
            hash_match=match,
            mismatch=mismatch,
            error=problem,
        )

    def _verify_anchors(self, subjects) -> List[AnchorVerification]:
        """subjects: (record, subject_type, stored fingerprint or None, EventVerification or None)."""
        checked = [record for record, _, _, _ in subjects if record.external_ref]
        pool = None
        futures = {}
        if checked:
            pool = ThreadPoolExecutor(
                max_workers=min(len(checked), self.max_check_workers),
                thread_name_prefix="verify-anchor",
            )
            for record in checked:
                futures[record.subject_id] = pool.submit(self.gateway.check_confirmation, record.external_ref)
        try:
            results = []
            for record, subject_type, stored_fingerprint, event_result in subjects:
                result = self._verify_anchor(record, subject_type, stored_fingerprint, futures.get(record.subject_id))
                if event_result is not None:
                    event_result.anchor_confirmed = result.confirmed
                results.append(result)
            return results
        finally:
            if pool is not None:
                # Hung checks keep their thread; they cannot hold up later verifications
                pool.shutdown(wait=False)

    def _verify_anchor(self, record: AnchorRecord, subject_type: str, stored_fingerprint: Optional[str],
                       pending: Optional[Future]) -> AnchorVerification:
        result = AnchorVerification(
            subject_id=record.subject_id,
            subject_type=subject_type,
            external_ref=record.external_ref,
            state=record.state.value,
            confirmed=False,
            block_number=record.block_number,
            simulated=record.simulated,
            fingerprint_matches=stored_fingerprint is None or fingerprints_match(record.fingerprint, stored_fingerprint),
            explorer_url=self.gateway.explorer_url(record.external_ref),
        )
        if pending is None:
            if record.state == AnchorState.SUBMITTED:
                result.error = "submission has no ledger reference yet"
            return result

        try:
            status = pending.result(timeout=self.confirmation_timeout)
        except FutureTimeout:
            pending.cancel()
            result.error = f"confirmation check timed out after {self.confirmation_timeout}s"
            return result
        except AnchorUnavailable as e:
            result.error = str(e)
            return result
        except Exception as e:
            logger.warning("Anchor check for %s failed: %s", record.subject_id, e)
            result.error = f"confirmation check failed: {e}"
            return result

        result.confirmed = status.confirmed
        if status.block_number is not None:
            result.block_number = status.block_number
        return result


def verify_package(package: Dict[str, Any], gateway: Optional[AnchorGateway] = None) -> List[VerificationReport]:
    """
    Verify an exported package offline.

    Accepts either a single-batch export ({"batch": ..., "events": [...]}) or
    a full store dump ({"batches": [...], "events": [...]}). Stored
    fingerprints are checked as they are; nothing is recomputed on import.
    """
    store = InMemoryStore()
    store.import_package(package_as_dump(package))

    verifier = IntegrityVerifier(store, gateway=gateway)
    return [verifier.verify(b.batch_id) for b in store.list_batches()]
