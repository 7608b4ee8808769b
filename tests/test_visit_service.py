"""
Visit queue tests.

Test coverage:
1. Queue intake: vitals validation and one open visit per patient
2. FIFO listing, including rows that only carry the legacy queued flag
3. Terminal states: no transition out of completed / cancelled, including from a stale session
4. Completion: notes, FEFO dispensing, ledger entries, patient flag
5. Insufficient stock under the reject and partial policies
6. Idempotent completion retries
7. Day history and daily counts
"""
from datetime import date, timedelta

import pytest

from core import events
from core.errors import ConflictError, IllegalTransitionError, InsufficientStockError, ValidationError
from core.time_utils import clinic_midnight_utc, clinic_today
from models.inventory import InventoryLot
from models.patient import Patient
from models.transaction import OUT
from models.visit import CANCELLED, COMPLETED, QUEUED, VisitRecord
from services import transaction_service, visit_service

TODAY = date(2024, 12, 1)
VITALS = {"blood_pressure": "120/80", "temperature_c": "36.5", "height_cm": "165", "weight_kg": "60.5"}


def morning(hours: int = 1, day: date = TODAY):
    return clinic_midnight_utc(day) + timedelta(hours=hours)


@pytest.fixture
def queued_visit(db, make_patient):
    patient = make_patient()
    return visit_service.create_visit(db, patient.id, VITALS, chief_complaint="Cough", now=morning(1))


@pytest.fixture
def amoxicillin(make_lot):
    """Two lots; the one expiring first must be used first."""
    late = make_lot("Antibiotics", "Amoxicillin", 10, date(2025, 6, 1))
    early = make_lot("Antibiotics", "Amoxicillin", 4, date(2025, 1, 15))
    return early, late


# =============================================================================
# Intake
# =============================================================================
class TestCreateVisit:
    def test_creates_queued_visit_with_vitals(self, db, queued_visit):
        visit = db.get(VisitRecord, queued_visit.id)

        assert visit.status == QUEUED
        assert visit.version == 1
        assert visit.blood_pressure == "120/80"
        assert visit.temperature_c == 36.5
        assert visit.weight_kg == 60.5
        assert visit.chief_complaint == "Cough"
        assert visit.patient.queued is True

    def test_required_vitals(self, db, make_patient):
        patient = make_patient()

        with pytest.raises(ValidationError) as exc_info:
            visit_service.create_visit(db, patient.id, {"blood_pressure": "120/80"})

        assert exc_info.value.field == "temperature_c"
        assert db.query(VisitRecord).count() == 0

    @pytest.mark.parametrize("bp", ["80/120", "120-80", "1200/80"])
    def test_bad_blood_pressure(self, db, make_patient, bp):
        patient = make_patient()

        with pytest.raises(ValidationError) as exc_info:
            visit_service.create_visit(db, patient.id, {**VITALS, "blood_pressure": bp})

        assert exc_info.value.field == "blood_pressure"

    def test_one_open_visit_per_patient(self, db, queued_visit):
        with pytest.raises(ConflictError):
            visit_service.create_visit(db, queued_visit.patient_id, VITALS)

        assert db.query(VisitRecord).count() == 1

    def test_requeue_after_completion(self, db, queued_visit, doctor):
        visit_service.complete_visit(db, queued_visit.id, "Cold", "Rest", staff=doctor)

        again = visit_service.create_visit(db, queued_visit.patient_id, VITALS)

        assert again.id != queued_visit.id


# =============================================================================
# Queue listing
# =============================================================================
class TestListQueued:
    def test_first_come_first_served(self, db, make_patient):
        late = visit_service.create_visit(db, make_patient().id, VITALS, now=morning(3))
        early = visit_service.create_visit(db, make_patient().id, VITALS, now=morning(1))

        assert [v.id for v in visit_service.list_queued(db)] == [early.id, late.id]

    def test_honors_legacy_queued_flag(self, db, make_patient):
        current = visit_service.create_visit(db, make_patient().id, VITALS, now=morning(2))

        legacy = VisitRecord(patient_id=make_patient().id, queued=True, created_at=morning(1))
        in_progress = VisitRecord(patient_id=make_patient().id, queued=True, status="in_progress",
                                  created_at=morning(4))
        closed = VisitRecord(patient_id=make_patient().id, queued=True, status=COMPLETED,
                             created_at=morning(0))
        db.add_all([legacy, in_progress, closed])
        db.flush()
        db.query(VisitRecord).filter(VisitRecord.id == legacy.id).update(
            {VisitRecord.status: None}, synchronize_session=False
        )
        db.commit()

        assert [v.id for v in visit_service.list_queued(db)] == [legacy.id, current.id, in_progress.id]

    def test_closed_visits_leave_the_queue(self, db, queued_visit, make_patient, doctor):
        other = visit_service.create_visit(db, make_patient().id, VITALS, now=morning(2))

        visit_service.complete_visit(db, queued_visit.id, "Cold", "Rest", staff=doctor)
        visit_service.cancel_visit(db, other.id)

        assert visit_service.list_queued(db) == []


# =============================================================================
# Terminal states
# =============================================================================
class TestTerminalStates:
    def test_cannot_complete_cancelled_visit(self, db, queued_visit, doctor, amoxicillin):
        visit_service.cancel_visit(db, queued_visit.id)

        with pytest.raises(IllegalTransitionError):
            visit_service.complete_visit(
                db, queued_visit.id, "Cold", "Rest",
                dispensed=[("Antibiotics", "Amoxicillin", 2)], staff=doctor, today=TODAY,
            )

        visit = db.get(VisitRecord, queued_visit.id)
        assert visit.status == CANCELLED
        assert visit.doctor_notes is None
        assert transaction_service.transactions_for_visit(db, visit.id) == []

    def test_cannot_cancel_completed_visit(self, db, queued_visit, doctor):
        visit_service.complete_visit(db, queued_visit.id, "Cold", "Rest", staff=doctor)

        with pytest.raises(IllegalTransitionError):
            visit_service.cancel_visit(db, queued_visit.id)

        assert db.get(VisitRecord, queued_visit.id).status == COMPLETED

    def test_cannot_complete_twice_without_key(self, db, queued_visit, doctor):
        visit_service.complete_visit(db, queued_visit.id, "Cold", "Rest", staff=doctor)

        with pytest.raises(IllegalTransitionError):
            visit_service.complete_visit(db, queued_visit.id, "Cold", "Rest", staff=doctor)

    def test_cancel_clears_patient_flag(self, db, queued_visit):
        visit_service.cancel_visit(db, queued_visit.id)

        patient = db.get(Patient, queued_visit.patient_id)
        assert patient.queued is False
        assert patient.queued_at is None


# =============================================================================
# Concurrent transitions
# =============================================================================
class TestConcurrentTransitions:
    def test_stale_terminal_cannot_complete_cancelled_visit(self, db, other_db, queued_visit, doctor, amoxicillin):
        # The second terminal opened the chart while the visit was still queued
        stale = other_db.get(VisitRecord, queued_visit.id)
        assert stale.status == QUEUED

        visit_service.cancel_visit(db, queued_visit.id)

        with pytest.raises(IllegalTransitionError):
            visit_service.complete_visit(
                other_db, queued_visit.id, "Cold", "Rest",
                dispensed=[("Antibiotics", "Amoxicillin", 2)], staff=doctor, today=TODAY,
            )

        db.expire_all()
        assert db.get(VisitRecord, queued_visit.id).status == CANCELLED
        assert sum(lot.quantity for lot in db.query(InventoryLot).all()) == 14
        assert transaction_service.transactions_for_visit(db, queued_visit.id) == []

    def test_stale_terminal_cannot_complete_twice(self, db, other_db, queued_visit, doctor, amoxicillin):
        other_db.get(VisitRecord, queued_visit.id)

        visit_service.complete_visit(
            db, queued_visit.id, "Cold", "Rest",
            dispensed=[("Antibiotics", "Amoxicillin", 2)], staff=doctor, today=TODAY,
        )

        with pytest.raises(IllegalTransitionError):
            visit_service.complete_visit(
                other_db, queued_visit.id, "Flu", "Rest",
                dispensed=[("Antibiotics", "Amoxicillin", 2)], staff=doctor, today=TODAY,
            )

        db.expire_all()
        visit = db.get(VisitRecord, queued_visit.id)
        assert visit.doctor_assessment == "Cold"
        assert sum(lot.quantity for lot in db.query(InventoryLot).all()) == 12

    def test_version_mismatch_is_a_conflict(self, db, other_db, queued_visit, doctor, amoxicillin):
        other_db.get(VisitRecord, queued_visit.id)

        # Another terminal edits the still-queued visit
        db.query(VisitRecord).filter(VisitRecord.id == queued_visit.id).update(
            {VisitRecord.version: VisitRecord.version + 1}, synchronize_session=False
        )
        db.commit()

        with pytest.raises(ConflictError) as exc_info:
            visit_service.complete_visit(
                other_db, queued_visit.id, "Cold", "Rest",
                dispensed=[("Antibiotics", "Amoxicillin", 2)], staff=doctor, today=TODAY,
            )

        assert not isinstance(exc_info.value, IllegalTransitionError)
        db.expire_all()
        visit = db.get(VisitRecord, queued_visit.id)
        assert visit.status == QUEUED
        assert visit.version == 2
        assert sum(lot.quantity for lot in db.query(InventoryLot).all()) == 14


# =============================================================================
# Completion
# =============================================================================
class TestCompleteVisit:
    def test_records_notes_and_dispenses_fefo(self, db, queued_visit, doctor, amoxicillin):
        early, late = amoxicillin

        result = visit_service.complete_visit(
            db, queued_visit.id, "Acute bronchitis", "Amoxicillin 500mg TID",
            dispensed=[("Antibiotics", "Amoxicillin", 6)],
            prescribed=[("Vitamins", "Ascorbic Acid", 30)],
            staff=doctor, today=TODAY,
        )

        assert result.status == COMPLETED
        assert result.dispensed == [("Amoxicillin", 6, 6)]
        assert result.prescribed == [("Ascorbic Acid", 30)]
        assert result.fully_dispensed

        visit = db.get(VisitRecord, queued_visit.id)
        assert visit.status == COMPLETED
        assert visit.version == 2
        assert visit.doctor_full_name == "Dr. Santos"
        assert visit.doctor_notes == (
            "Assessment / Diagnosis:\nAcute bronchitis\n\nManagement:\nAmoxicillin 500mg TID"
        )
        assert visit.completed_at is not None
        assert [(m.kind, m.medicine_name, m.quantity) for m in visit.medicines] == [
            (visit_service.DISTRIBUTED, "Amoxicillin", 6),
            (visit_service.PRESCRIBED, "Ascorbic Acid", 30),
        ]

        assert db.get(InventoryLot, early.id).quantity == 0
        assert db.get(InventoryLot, late.id).quantity == 8

        txns = transaction_service.transactions_for_visit(db, visit.id)
        assert [(t.direction, t.medicine_name, t.quantity, t.patient_id) for t in txns] == [
            (OUT, "Amoxicillin", 6, visit.patient_id)
        ]
        assert txns[0].dosage_form == "Tablet"
        assert db.get(Patient, visit.patient_id).queued is False

    def test_prescribed_items_do_not_touch_stock(self, db, queued_visit, doctor, amoxicillin):
        visit_service.complete_visit(
            db, queued_visit.id, "Cold", "Buy amoxicillin",
            prescribed=[("Antibiotics", "Amoxicillin", 20)], staff=doctor, today=TODAY,
        )

        assert sum(lot.quantity for lot in db.query(InventoryLot).all()) == 14
        assert transaction_service.transactions_for_visit(db, queued_visit.id) == []

    def test_assessment_is_required(self, db, queued_visit, doctor):
        with pytest.raises(ValidationError) as exc_info:
            visit_service.complete_visit(db, queued_visit.id, "  ", "Rest", staff=doctor)

        assert exc_info.value.field == "assessment"
        assert db.get(VisitRecord, queued_visit.id).status == QUEUED

    def test_dispensed_quantity_must_be_positive(self, db, queued_visit, doctor):
        with pytest.raises(ValidationError):
            visit_service.complete_visit(
                db, queued_visit.id, "Cold", "Rest",
                dispensed=[("Antibiotics", "Amoxicillin", 0)], staff=doctor,
            )

    def test_unknown_policy(self, db, queued_visit, doctor):
        with pytest.raises(ValidationError):
            visit_service.complete_visit(db, queued_visit.id, "Cold", "Rest", staff=doctor,
                                         insufficient_stock="sometimes")

    def test_publishes_completion_after_commit(self, db, queued_visit, doctor, amoxicillin, events_seen):
        visit_service.complete_visit(
            db, queued_visit.id, "Cold", "Rest",
            dispensed=[("Antibiotics", "Amoxicillin", 2)], staff=doctor, today=TODAY,
        )

        visit_events = [e for e in events_seen if e.entity == events.VISIT_RECORD]
        assert [(e.entity_id, e.version, e.action) for e in visit_events] == [
            (queued_visit.id, 2, COMPLETED)
        ]
        assert any(e.entity == events.INVENTORY_LOT and e.action == "updated" for e in events_seen)
        assert any(e.entity == events.DISPENSE_TRANSACTION for e in events_seen)


# =============================================================================
# Insufficient stock
# =============================================================================
class TestInsufficientStock:
    def test_reject_rolls_back_everything(self, db, queued_visit, doctor, amoxicillin, make_lot, events_seen):
        make_lot("Analgesic", "Paracetamol", 50, date(2025, 6, 1))
        events_seen.clear()

        with pytest.raises(InsufficientStockError) as exc_info:
            visit_service.complete_visit(
                db, queued_visit.id, "Cold", "Rest",
                dispensed=[("Analgesic", "Paracetamol", 5), ("Antibiotics", "Amoxicillin", 20)],
                staff=doctor, today=TODAY, insufficient_stock="reject",
            )

        assert exc_info.value.available == 14
        visit = db.get(VisitRecord, queued_visit.id)
        assert visit.status == QUEUED
        assert visit.version == 1
        assert visit.medicines == []
        assert sum(lot.quantity for lot in db.query(InventoryLot).all()) == 64
        assert transaction_service.transactions_for_visit(db, visit.id) == []
        assert db.get(Patient, visit.patient_id).queued is True
        assert events_seen == []

    def test_partial_dispenses_what_is_available(self, db, queued_visit, doctor, amoxicillin):
        result = visit_service.complete_visit(
            db, queued_visit.id, "Cold", "Rest",
            dispensed=[("Antibiotics", "Amoxicillin", 20), ("Antibiotics", "Cefalexin", 3)],
            staff=doctor, today=TODAY, insufficient_stock="partial",
        )

        assert result.status == COMPLETED
        assert result.shortfalls == [("Amoxicillin", 20, 14), ("Cefalexin", 3, 0)]
        assert not result.fully_dispensed

        visit = db.get(VisitRecord, queued_visit.id)
        assert visit.status == COMPLETED
        assert [(m.medicine_name, m.quantity, m.quantity_dispensed) for m in visit.medicines] == [
            ("Amoxicillin", 20, 14),
            ("Cefalexin", 3, 0),
        ]
        txns = transaction_service.transactions_for_visit(db, visit.id)
        assert [(t.medicine_name, t.quantity) for t in txns] == [("Amoxicillin", 14)]
        assert sum(lot.quantity for lot in db.query(InventoryLot).all()) == 0


# =============================================================================
# Idempotent retries
# =============================================================================
class TestIdempotentCompletion:
    def test_retry_with_same_key_is_a_no_op(self, db, queued_visit, doctor, amoxicillin):
        kwargs = dict(dispensed=[("Antibiotics", "Amoxicillin", 5)], staff=doctor, today=TODAY,
                      idempotency_key="chart-123")

        first = visit_service.complete_visit(db, queued_visit.id, "Cold", "Rest", **kwargs)
        second = visit_service.complete_visit(db, queued_visit.id, "Cold", "Rest", **kwargs)

        assert first.replayed is False
        assert second.replayed is True
        assert second.dispensed == [("Amoxicillin", 5, 5)]
        assert sum(lot.quantity for lot in db.query(InventoryLot).all()) == 9
        assert len(transaction_service.transactions_for_visit(db, queued_visit.id)) == 1

    def test_key_cannot_be_reused_for_another_visit(self, db, queued_visit, make_patient, doctor):
        other = visit_service.create_visit(db, make_patient().id, VITALS)
        visit_service.complete_visit(db, queued_visit.id, "Cold", "Rest", staff=doctor,
                                     idempotency_key="chart-123")

        with pytest.raises(ConflictError):
            visit_service.complete_visit(db, other.id, "Cold", "Rest", staff=doctor,
                                         idempotency_key="chart-123")

        assert db.get(VisitRecord, other.id).status == QUEUED

    def test_failed_attempt_does_not_burn_the_key(self, db, queued_visit, doctor, amoxicillin):
        with pytest.raises(InsufficientStockError):
            visit_service.complete_visit(
                db, queued_visit.id, "Cold", "Rest",
                dispensed=[("Antibiotics", "Amoxicillin", 50)], staff=doctor, today=TODAY,
                idempotency_key="chart-123", insufficient_stock="reject",
            )

        result = visit_service.complete_visit(
            db, queued_visit.id, "Cold", "Rest",
            dispensed=[("Antibiotics", "Amoxicillin", 5)], staff=doctor, today=TODAY,
            idempotency_key="chart-123",
        )

        assert result.replayed is False
        assert result.dispensed == [("Amoxicillin", 5, 5)]


# =============================================================================
# History
# =============================================================================
class TestHistory:
    def test_day_history_lists_completed_visits(self, db, queued_visit, make_patient, doctor):
        cancelled = visit_service.create_visit(db, make_patient().id, VITALS)
        visit_service.cancel_visit(db, cancelled.id)
        visit_service.complete_visit(db, queued_visit.id, "Cold", "Rest", staff=doctor)

        rows = visit_service.day_history(db, clinic_today())

        assert [v.id for v in rows] == [queued_visit.id]
        assert visit_service.day_history(db, date(2000, 1, 1)) == []

    def test_queued_today_count_excludes_cancelled(self, db, make_patient):
        visit_service.create_visit(db, make_patient().id, VITALS, now=morning(1))
        dropped = visit_service.create_visit(db, make_patient().id, VITALS, now=morning(2))
        visit_service.create_visit(db, make_patient().id, VITALS, now=morning(1, TODAY + timedelta(days=1)))
        visit_service.cancel_visit(db, dropped.id)

        assert visit_service.queued_today_count(db, TODAY) == 1

    def test_past_records_are_closed_visits_newest_first(self, db, make_patient, doctor):
        patient = make_patient()
        first = visit_service.create_visit(db, patient.id, VITALS, now=morning(1))
        visit_service.complete_visit(db, first.id, "Cold", "Rest", staff=doctor)
        second = visit_service.create_visit(db, patient.id, VITALS, now=morning(5))
        visit_service.cancel_visit(db, second.id)
        visit_service.create_visit(db, patient.id, VITALS, now=morning(8))

        assert [v.id for v in visit_service.past_records(db, patient.id)] == [second.id, first.id]
