"""
Custody Engine Test Suite

End-to-end custody flows through CustodyEngine with an in-memory store.
"""

import threading
import unittest
from datetime import datetime, timedelta, timezone

from custodychain import (
    AnchorDispatcher,
    AnchorState,
    AnchorUnavailable,
    AuditAction,
    BatchInput,
    BatchStatus,
    Contact,
    CredentialType,
    CustodyEngine,
    DocumentType,
    EventInput,
    EventType,
    InMemoryStore,
    InvalidTransition,
    Location,
    NotFound,
    PartyType,
    Quantity,
    SimulatedAnchorGateway,
    ValidationError,
    fingerprint_of_bytes,
)
from custodychain.models import FacilityType


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds=60):
        self.now = self.now + timedelta(seconds=seconds)


def seed(engine):
    """Register the parties and the mine used by every scenario."""
    miner = engine.register_party("Kivu Artisanal Cooperative", PartyType.MINE_OPERATOR, "CD")
    carrier = engine.register_party("Great Lakes Logistics", PartyType.TRANSPORTER, "RW")
    refinery = engine.register_party("Alpine Precious Metals", PartyType.REFINERY, "CH")
    mine = engine.register_facility(
        "Kamituga Site 4", FacilityType.MINE, miner.party_id,
        Location(country="CD", region="South Kivu", coordinates="-3.06,28.18"),
    )
    return miner, carrier, refinery, mine


def batch_input(mine, owner, reference="KGC-2026-001", **overrides):
    fields = dict(
        external_reference=reference,
        commodity_type="Gold",
        origin_facility_id=mine.facility_id,
        owner_party_id=owner.party_id,
        weight=25.5,
    )
    fields.update(overrides)
    return BatchInput(**fields)


class TestCustodyFlow(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.engine = CustodyEngine(clock=self.clock)
        self.miner, self.carrier, self.refinery, self.mine = seed(self.engine)

    def tearDown(self):
        self.engine.close()

    def test_create_ship_receive(self):
        batch, create = self.engine.create_batch(batch_input(self.mine, self.miner))
        self.assertEqual(batch.status, BatchStatus.CREATED)
        self.assertEqual(create.event_type, EventType.CREATE)
        self.assertEqual(create.sequence, 0)
        self.assertEqual(create.to_facility_id, self.mine.facility_id)
        self.assertEqual(len(create.fingerprint), 64)

        self.clock.advance()
        ship = self.engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=self.carrier.party_id))
        self.assertEqual(ship.from_party_id, self.miner.party_id)
        self.assertEqual(ship.from_facility_id, self.mine.facility_id)
        self.assertEqual(self.engine.get_batch(batch.batch_id).status, BatchStatus.IN_TRANSIT)

        self.clock.advance()
        self.engine.append_event(batch.batch_id, EventInput(EventType.RECEIVE, to_party_id=self.refinery.party_id))

        batch = self.engine.get_batch(batch.batch_id)
        self.assertEqual(batch.status, BatchStatus.RECEIVED)
        self.assertEqual(batch.owner_party_id, self.refinery.party_id)
        self.assertEqual(len(batch.event_ids), 3)

        report = self.engine.verify_batch(batch.batch_id)
        self.assertTrue(report.overall_valid)
        self.assertTrue(report.batch_fingerprint_valid)
        self.assertEqual(report.event_count, 3)
        self.assertTrue(all(e.hash_match for e in report.events))
        self.assertEqual(report.mismatches, [])

    def test_event_fingerprints_are_stable(self):
        batch, create = self.engine.create_batch(batch_input(self.mine, self.miner))
        self.assertEqual(self.engine.get_event(create.event_id).fingerprint, create.fingerprint)
        self.clock.advance()
        self.engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=self.carrier.party_id))
        self.assertEqual(self.engine.get_event(create.event_id).fingerprint, create.fingerprint)

    def test_illegal_transition_persists_nothing(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))
        with self.assertRaises(InvalidTransition):
            self.engine.append_event(batch.batch_id, EventInput(EventType.RECEIVE, to_party_id=self.refinery.party_id))
        self.assertEqual(len(self.engine.get_events(batch.batch_id)), 1)
        self.assertEqual(self.engine.get_batch(batch.batch_id).status, BatchStatus.CREATED)

    def test_transfer_reassigns_owner(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))
        self.engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=self.carrier.party_id))
        self.engine.append_event(batch.batch_id, EventInput(EventType.TRANSFER, to_party_id=self.carrier.party_id))
        batch = self.engine.get_batch(batch.batch_id)
        self.assertEqual(batch.status, BatchStatus.IN_TRANSIT)
        self.assertEqual(batch.owner_party_id, self.carrier.party_id)

    def test_receive_amends_quantity(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))
        self.engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=self.carrier.party_id))
        self.engine.append_event(
            batch.batch_id, EventInput(EventType.RECEIVE, to_party_id=self.refinery.party_id, weight=25.1),
        )
        batch = self.engine.get_batch(batch.batch_id)
        self.assertEqual(batch.quantity, Quantity(25.1, "kg"))
        self.assertTrue(self.engine.verify_batch(batch.batch_id).overall_valid)

    def test_assay_finalized(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))
        before = batch.fingerprint
        self.engine.append_event(batch.batch_id, EventInput(EventType.ASSAY_FINALIZED, assay_value=86.2))
        batch = self.engine.get_batch(batch.batch_id)
        self.assertEqual(batch.declared_assay.value, 86.2)
        self.assertEqual(batch.declared_assay.unit, "g/t")
        self.assertNotEqual(batch.fingerprint, before)
        self.assertTrue(self.engine.verify_batch(batch.batch_id).overall_valid)

    def test_dispute_and_resolve(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))
        self.engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=self.carrier.party_id))
        self.engine.append_event(batch.batch_id, EventInput(EventType.DISPUTE, notes="seal broken"))

        batch = self.engine.get_batch(batch.batch_id)
        self.assertEqual(batch.status, BatchStatus.DISPUTE)
        self.assertEqual(batch.prior_status, BatchStatus.IN_TRANSIT)
        self.assertEqual(self.engine.allowed_events(batch.batch_id), ["Resolve"])
        with self.assertRaises(InvalidTransition):
            self.engine.append_event(batch.batch_id, EventInput(EventType.RECEIVE, to_party_id=self.refinery.party_id))

        resolve = self.engine.append_event(batch.batch_id, EventInput(EventType.RESOLVE))
        self.assertIsNone(resolve.quantity)
        batch = self.engine.get_batch(batch.batch_id)
        self.assertEqual(batch.status, BatchStatus.IN_TRANSIT)
        self.assertIsNone(batch.prior_status)

        with self.assertRaises(InvalidTransition):
            self.engine.append_event(batch.batch_id, EventInput(EventType.RESOLVE))

    def test_close_is_terminal(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))
        self.engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=self.carrier.party_id))
        with self.assertRaises(InvalidTransition):
            self.engine.close_batch(batch.batch_id)

        self.engine.append_event(batch.batch_id, EventInput(EventType.RECEIVE, to_party_id=self.refinery.party_id))
        closed = self.engine.close_batch(batch.batch_id)
        self.assertEqual(closed.status, BatchStatus.CLOSED)
        self.assertEqual(self.engine.allowed_events(batch.batch_id), [])

        with self.assertRaises(InvalidTransition):
            self.engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=self.carrier.party_id))
        with self.assertRaises(InvalidTransition):
            self.engine.close_batch(batch.batch_id)
        self.assertTrue(self.engine.verify_batch(batch.batch_id).overall_valid)

    def test_missing_recipient(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))
        with self.assertRaises(ValidationError):
            self.engine.append_event(batch.batch_id, EventInput(EventType.SHIP))


class TestReferences(unittest.TestCase):

    def setUp(self):
        self.engine = CustodyEngine()
        self.miner, self.carrier, self.refinery, self.mine = seed(self.engine)

    def test_unknown_origin_and_owner(self):
        with self.assertRaises(NotFound):
            self.engine.create_batch(batch_input(self.mine, self.miner, origin_facility_id="fac-missing"))
        with self.assertRaises(NotFound):
            self.engine.create_batch(batch_input(self.mine, self.miner, owner_party_id="party-missing"))
        self.assertEqual(self.engine.list_batches(), [])

    def test_unknown_recipient(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))
        with self.assertRaises(NotFound):
            self.engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id="party-missing"))
        self.assertEqual(len(self.engine.get_events(batch.batch_id)), 1)

    def test_unknown_batch(self):
        with self.assertRaises(NotFound):
            self.engine.append_event("batch-missing", EventInput(EventType.SHIP, to_party_id=self.carrier.party_id))
        with self.assertRaises(NotFound):
            self.engine.verify_batch("batch-missing")

    def test_facility_owner_must_exist(self):
        with self.assertRaises(NotFound):
            self.engine.register_facility("Depot", FacilityType.WAREHOUSE, "party-missing", Location(country="RW"))

    def test_duplicate_reference(self):
        self.engine.create_batch(batch_input(self.mine, self.miner))
        with self.assertRaises(ValidationError):
            self.engine.create_batch(batch_input(self.mine, self.miner))

    def test_lookup_and_listing(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))
        self.assertEqual(self.engine.get_batch_by_reference("KGC-2026-001").batch_id, batch.batch_id)
        self.assertEqual(len(self.engine.list_batches("Created")), 1)
        self.assertEqual(self.engine.list_batches(BatchStatus.CLOSED), [])
        with self.assertRaises(ValidationError):
            self.engine.list_batches("Lost")
        with self.assertRaises(NotFound):
            self.engine.get_batch_by_reference("KGC-unknown")

    def test_party_contact_update(self):
        updated = self.engine.update_party_contact(self.miner.party_id, Contact("A. Mukendi", "ops@kivu.example"))
        self.assertEqual(self.engine.get_party(self.miner.party_id).contact.email, "ops@kivu.example")
        self.assertEqual(updated.legal_name, self.miner.legal_name)


class TestDocuments(unittest.TestCase):

    def setUp(self):
        self.engine = CustodyEngine()
        self.miner, self.carrier, self.refinery, self.mine = seed(self.engine)

    def test_register_and_verify(self):
        doc = self.engine.register_document(DocumentType.PERMIT, "permit.pdf", content=b"%PDF-permit")
        self.assertEqual(doc.fingerprint, fingerprint_of_bytes(b"%PDF-permit"))

        self.assertTrue(self.engine.verify_document(doc.document_id, b"%PDF-permit")["valid"])
        result = self.engine.verify_document(doc.document_id, b"%PDF-forged")
        self.assertFalse(result["valid"])
        self.assertEqual(result["storedFingerprint"], doc.fingerprint)

    def test_register_by_fingerprint(self):
        digest = fingerprint_of_bytes(b"waybill")
        doc = self.engine.register_document("WaybillAirwayBill", "waybill.pdf", content_fingerprint="sha256:" + digest.upper())
        self.assertEqual(doc.fingerprint, digest)

    def test_content_or_fingerprint_required(self):
        with self.assertRaises(ValidationError):
            self.engine.register_document(DocumentType.OTHER, "x.txt")
        with self.assertRaises(ValidationError):
            self.engine.register_document(DocumentType.OTHER, "x.txt", content=b"x", content_fingerprint="ab" * 32)
        with self.assertRaises(ValidationError):
            self.engine.register_document(DocumentType.OTHER, "x.txt", content_fingerprint="not-a-digest")

    def test_documents_attach_to_batch(self):
        permit = self.engine.register_document(DocumentType.PERMIT, "permit.pdf", content=b"permit")
        batch, create = self.engine.create_batch(batch_input(self.mine, self.miner), document_ids=[permit.document_id])
        self.assertEqual(create.document_ids, [permit.document_id])

        packing = self.engine.register_document(
            DocumentType.PACKING_LIST, "packing.pdf", content=b"packing", related_batch_id=batch.batch_id,
        )
        self.engine.append_event(
            batch.batch_id,
            EventInput(EventType.SHIP, to_party_id=self.carrier.party_id, document_ids=[packing.document_id]),
        )
        batch = self.engine.get_batch(batch.batch_id)
        self.assertEqual(batch.document_ids, [permit.document_id, packing.document_id])

        with self.assertRaises(NotFound):
            self.engine.create_batch(batch_input(self.mine, self.miner, reference="KGC-2"), document_ids=["doc-missing"])


class TestAnchoredEngine(unittest.TestCase):

    def setUp(self):
        self.gateway = SimulatedAnchorGateway()
        self.engine = CustodyEngine(dispatcher=AnchorDispatcher(self.gateway, immediate=True, sleep=lambda s: None))
        self.miner, self.carrier, self.refinery, self.mine = seed(self.engine)

    def tearDown(self):
        self.engine.close()

    def test_batch_and_events_anchored(self):
        batch, create = self.engine.create_batch(batch_input(self.mine, self.miner))
        batch_anchor = self.engine.get_anchor(batch.batch_id)
        event_anchor = self.engine.get_anchor(create.event_id)

        self.assertEqual(batch_anchor.state, AnchorState.CONFIRMED)
        self.assertEqual(event_anchor.state, AnchorState.CONFIRMED)
        self.assertTrue(event_anchor.simulated)
        self.assertEqual(event_anchor.fingerprint, create.fingerprint)
        self.assertEqual(self.gateway.lookup(event_anchor.external_ref), create.fingerprint)

        report = self.engine.verify_batch(batch.batch_id)
        self.assertTrue(report.overall_valid)
        self.assertEqual(len(report.anchors), 2)
        self.assertTrue(all(a.confirmed for a in report.anchors))
        self.assertEqual(report.anchor_warnings, [])

    def test_refresh_unconfirmed_anchor(self):
        self.gateway.confirm = False
        batch, create = self.engine.create_batch(batch_input(self.mine, self.miner))
        self.assertEqual(self.engine.get_anchor(create.event_id).state, AnchorState.UNCONFIRMED)

        self.gateway.confirm = True
        record = self.engine.refresh_anchor(create.event_id)
        self.assertEqual(record.state, AnchorState.CONFIRMED)
        self.assertEqual(self.engine.get_anchor(create.event_id).state, AnchorState.CONFIRMED)

    def test_offline_gateway_does_not_block_custody(self):
        self.gateway.available = False
        batch, create = self.engine.create_batch(batch_input(self.mine, self.miner))
        anchor = self.engine.get_anchor(create.event_id)
        self.assertEqual(anchor.state, AnchorState.SUBMITTED)
        self.assertIsNotNone(anchor.last_error)

        self.gateway.available = True
        self.assertEqual(self.engine.refresh_anchor(create.event_id).state, AnchorState.CONFIRMED)

    def test_chain_of_custody_status(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))
        view = self.engine.chain_of_custody(batch.batch_id)
        self.assertEqual(view["verificationStatus"]["status"], "INCOMPLETE")

        permit = self.engine.register_document(
            DocumentType.PERMIT, "permit.pdf", content=b"permit", related_batch_id=batch.batch_id,
        )
        self.engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=self.carrier.party_id))
        view = self.engine.chain_of_custody(batch.batch_id)

        self.assertEqual(view["verificationStatus"]["status"], "VERIFIED")
        self.assertEqual(view["documentCount"], 1)
        self.assertEqual(view["allDocuments"][0]["id"], permit.document_id)
        self.assertEqual(view["originFacility"]["location"]["gps"], "-3.06,28.18")
        self.assertEqual([t["eventType"] for t in view["timeline"]], ["Create", "Ship"])
        self.assertEqual(view["timeline"][1]["to"]["party"]["name"], "Great Lakes Logistics")
        self.assertEqual(view["timeline"][1]["anchorState"], "Confirmed")

        self.engine.append_event(batch.batch_id, EventInput(EventType.DISPUTE))
        self.assertEqual(self.engine.chain_of_custody(batch.batch_id)["verificationStatus"]["status"], "DISPUTED")

    def test_export_package(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))
        self.engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=self.carrier.party_id))
        package = self.engine.export_batch_package(batch.batch_id)

        self.assertEqual(package["exportVersion"], "1.0")
        self.assertEqual(package["batch"]["batchId"], batch.batch_id)
        self.assertEqual(len(package["events"]), 2)
        self.assertEqual(
            {p["partyId"] for p in package["parties"]},
            {self.miner.party_id, self.carrier.party_id},
        )
        self.assertTrue(package["verification"]["overallValid"])
        self.assertEqual(package["events"][0]["anchor"]["state"], "Confirmed")


class TestEngineWithoutAnchoring(unittest.TestCase):

    def test_partial_status_and_refresh(self):
        engine = CustodyEngine()
        miner, carrier, refinery, mine = seed(engine)
        engine.register_document(DocumentType.PERMIT, "permit.pdf", content=b"permit")
        permit = engine.list_documents()[0]
        batch, create = engine.create_batch(batch_input(mine, miner), document_ids=[permit.document_id])

        self.assertEqual(engine.chain_of_custody(batch.batch_id)["verificationStatus"]["status"], "PARTIAL")
        self.assertIsNone(engine.get_event(create.event_id).anchor)
        with self.assertRaises(AnchorUnavailable):
            engine.refresh_anchor(create.event_id)
        self.assertTrue(engine.verify_batch(batch.batch_id).overall_valid)


class TestClock(unittest.TestCase):

    def test_backwards_clock_is_clamped(self):
        clock = FakeClock()
        engine = CustodyEngine(clock=clock)
        miner, carrier, refinery, mine = seed(engine)
        batch, create = engine.create_batch(batch_input(mine, miner))

        clock.now = clock.now - timedelta(minutes=30)
        ship = engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=carrier.party_id))

        self.assertEqual(create.timestamp, "2026-03-01T09:30:00.000Z")
        self.assertEqual(ship.timestamp, create.timestamp)
        events = engine.get_events(batch.batch_id)
        self.assertEqual([e.event_type for e in events], [EventType.CREATE, EventType.SHIP])
        self.assertTrue(engine.verify_batch(batch.batch_id).overall_valid)


class TestConcurrency(unittest.TestCase):

    def test_parallel_appends_are_serialized(self):
        engine = CustodyEngine()
        miner, carrier, refinery, mine = seed(engine)
        batch, _ = engine.create_batch(batch_input(mine, miner))

        errors = []
        events = []
        guard = threading.Lock()

        def append_one(n):
            try:
                event = engine.append_event(batch.batch_id, EventInput(EventType.INSPECT_TEST, notes=f"inspection {n}"))
                with guard:
                    events.append(event)
            except Exception as e:
                with guard:
                    errors.append(e)

        threads = [threading.Thread(target=append_one, args=(n,)) for n in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(sorted(e.sequence for e in events), list(range(1, 21)))
        batch = engine.get_batch(batch.batch_id)
        self.assertEqual(len(batch.event_ids), 21)
        self.assertEqual(len(set(batch.event_ids)), 21)

        report = engine.verify_batch(batch.batch_id)
        self.assertTrue(report.overall_valid)
        self.assertEqual(report.event_count, 21)


if __name__ == "__main__":
    unittest.main()


class ConfirmDuringAppendStore(InMemoryStore):
    """Runs on_record between the engine reading a batch and writing it back."""

    on_record = None

    def record_event(self, event, batch):
        if self.on_record is not None:
            self.on_record()
        super().record_event(event, batch)


class TestAnchorWriteBack(unittest.TestCase):

    def test_append_keeps_anchor_confirmed_meanwhile(self):
        store = ConfirmDuringAppendStore()
        gateway = SimulatedAnchorGateway()
        engine = CustodyEngine(store=store, dispatcher=AnchorDispatcher(gateway, immediate=True, sleep=lambda s: None))
        miner, carrier, refinery, mine = seed(engine)

        gateway.available = False
        batch, _ = engine.create_batch(batch_input(mine, miner))
        self.assertEqual(engine.get_anchor(batch.batch_id).state, AnchorState.SUBMITTED)

        gateway.available = True
        store.on_record = lambda: engine.refresh_anchor(batch.batch_id)
        ship = engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=carrier.party_id))

        anchor = engine.get_anchor(batch.batch_id)
        self.assertEqual(anchor.state, AnchorState.CONFIRMED)
        self.assertIsNotNone(anchor.external_ref)
        self.assertEqual(engine.get_batch(batch.batch_id).event_ids[-1], ship.event_id)
        engine.close()

    def test_close_keeps_stored_anchor(self):
        engine = CustodyEngine(dispatcher=AnchorDispatcher(SimulatedAnchorGateway(), immediate=True))
        miner, carrier, refinery, mine = seed(engine)
        batch, _ = engine.create_batch(batch_input(mine, miner))

        stale = engine.get_batch(batch.batch_id)
        stale.anchor = None
        engine.store.update_batch(stale)
        self.assertEqual(engine.get_anchor(batch.batch_id).state, AnchorState.CONFIRMED)

        engine.close_batch(batch.batch_id)
        self.assertEqual(engine.get_anchor(batch.batch_id).state, AnchorState.CONFIRMED)
        engine.close()


class TestAuditTrail(unittest.TestCase):

    def setUp(self):
        self.engine = CustodyEngine(clock=FakeClock())
        self.miner, self.carrier, self.refinery, self.mine = seed(self.engine)

    def test_every_change_is_recorded(self):
        batch, create = self.engine.create_batch(batch_input(self.mine, self.miner))
        ship = self.engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=self.carrier.party_id))
        self.engine.update_party_contact(self.miner.party_id, Contact(name="Amani", email="amani@kivu.example"))

        batch_trail = self.engine.get_audit_log(batch.batch_id)
        self.assertEqual([e.action for e in batch_trail], [AuditAction.CREATE, AuditAction.UPDATE])
        self.assertTrue(all(e.entity_type == "Batch" for e in batch_trail))

        self.assertEqual([e.action for e in self.engine.get_audit_log(create.event_id)], [AuditAction.CREATE])
        self.assertEqual([e.action for e in self.engine.get_audit_log(ship.event_id)], [AuditAction.CREATE])
        self.assertEqual(
            [e.action for e in self.engine.get_audit_log(self.miner.party_id)],
            [AuditAction.CREATE, AuditAction.UPDATE],
        )
        self.assertEqual(self.engine.get_audit_log(self.mine.facility_id)[0].entity_type, "Facility")

    def test_entry_shape(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner, notes="x" * 2000))
        entry = self.engine.get_audit_log(batch.batch_id)[0].to_dict()

        self.assertEqual(entry["action"], "CREATE")
        self.assertEqual(entry["entityType"], "Batch")
        self.assertEqual(entry["entityId"], batch.batch_id)
        self.assertEqual(entry["userId"], "system")
        self.assertEqual(entry["timestamp"], "2026-03-01T09:30:00.000Z")
        self.assertLessEqual(len(entry["dataSummary"]), 500)

    def test_rejected_event_is_not_recorded(self):
        batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))
        before = len(self.engine.get_audit_log())
        with self.assertRaises(InvalidTransition):
            self.engine.append_event(batch.batch_id, EventInput(EventType.RECEIVE, to_party_id=self.refinery.party_id))
        self.assertEqual(len(self.engine.get_audit_log()), before)


class TestCredentials(unittest.TestCase):

    def setUp(self):
        self.engine = CustodyEngine(clock=FakeClock())
        self.miner, self.carrier, self.refinery, self.mine = seed(self.engine)
        self.batch, _ = self.engine.create_batch(batch_input(self.mine, self.miner))

    def test_issue_and_list(self):
        credential = self.engine.issue_credential(
            CredentialType.ORIGIN_PROOF, self.refinery.party_id, "Conflict-free origin confirmed",
            subject_batch_id=self.batch.batch_id,
        )
        self.engine.issue_credential(
            "ComplianceAttestation", self.refinery.party_id, "Site audit passed",
            subject_facility_id=self.mine.facility_id,
        )

        self.assertEqual(self.engine.get_credential(credential.credential_id).claims_summary,
                         "Conflict-free origin confirmed")
        self.assertEqual(len(self.engine.list_credentials()), 2)
        self.assertEqual(
            [c.credential_id for c in self.engine.list_credentials(self.batch.batch_id)],
            [credential.credential_id],
        )
        self.assertEqual(self.engine.get_audit_log(credential.credential_id)[0].entity_type, "Credential")

        view = self.engine.chain_of_custody(self.batch.batch_id)
        self.assertEqual(view["credentials"][0]["type"], "OriginProof")
        self.assertEqual(view["credentials"][0]["issuer"]["name"], "Alpine Precious Metals")

    def test_rejected_credentials(self):
        with self.assertRaises(ValidationError):
            self.engine.issue_credential(CredentialType.ASSAY_ATTESTATION, self.refinery.party_id, "Assay 91.2 g/t")
        with self.assertRaises(ValidationError):
            self.engine.issue_credential("Notarized", self.refinery.party_id, "n/a", subject_batch_id=self.batch.batch_id)
        with self.assertRaises(NotFound):
            self.engine.issue_credential(
                CredentialType.ORIGIN_PROOF, "party-missing", "n/a", subject_batch_id=self.batch.batch_id,
            )
        with self.assertRaises(NotFound):
            self.engine.issue_credential(
                CredentialType.ORIGIN_PROOF, self.refinery.party_id, "n/a", subject_batch_id="batch-missing",
            )
        with self.assertRaises(NotFound):
            self.engine.get_credential("credential-missing")


class TestImport(unittest.TestCase):

    def setUp(self):
        self.source = CustodyEngine(dispatcher=AnchorDispatcher(SimulatedAnchorGateway(), immediate=True))
        miner, carrier, refinery, mine = seed(self.source)
        self.batch, _ = self.source.create_batch(batch_input(mine, miner))
        self.source.append_event(self.batch.batch_id, EventInput(EventType.SHIP, to_party_id=carrier.party_id))
        self.source.issue_credential(
            CredentialType.ORIGIN_PROOF, refinery.party_id, "Origin confirmed", subject_batch_id=self.batch.batch_id,
        )
        self.package = self.source.export_batch_package(self.batch.batch_id)

    def tearDown(self):
        self.source.close()

    def test_exported_package_imports_and_verifies(self):
        target = CustodyEngine()
        counts = target.import_package(self.package)

        self.assertEqual(counts["batches"], 1)
        self.assertEqual(counts["events"], 2)
        self.assertEqual(counts["credentials"], 1)
        self.assertTrue(target.verify_batch(self.batch.batch_id).overall_valid)
        self.assertEqual(target.get_anchor(self.batch.batch_id).state, AnchorState.CONFIRMED)
        self.assertEqual(target.get_batch(self.batch.batch_id).fingerprint, self.batch.fingerprint)
        self.assertEqual(
            [e.action for e in target.get_audit_log(self.batch.batch_id)], [AuditAction.IMPORT],
        )

    def test_full_dump_imports(self):
        target = CustodyEngine()
        counts = target.import_package(self.source.store.export())
        self.assertEqual(counts["parties"], 3)
        self.assertEqual(len(target.list_batches()), 1)

    def test_malformed_and_duplicate_packages(self):
        target = CustodyEngine()
        with self.assertRaises(ValidationError):
            target.import_package(["not", "a", "package"])
        with self.assertRaises(ValidationError):
            target.import_package({"batches": [{"batchId": "b-1"}]})

        target.import_package(self.package)
        with self.assertRaises(ValidationError):
            target.import_package(self.package)
