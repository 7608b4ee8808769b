import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session, joinedload

from core import events
from core.config import INSUFFICIENT_STOCK_POLICY, REQUIRED_VITALS
from core.database import atomic, queue_change
from core.errors import (
    ConflictError,
    IllegalTransitionError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from core.time_utils import clinic_day_bounds_utc, clinic_today, now_utc
from core.validators import (
    validate_blood_pressure,
    validate_height_cm,
    validate_quantity,
    validate_required_text,
    validate_temperature_c,
    validate_weight_kg,
)
from models.patient import Patient
from models.transaction import OUT
from models.visit import (
    CANCELLED,
    COMPLETED,
    QUEUED,
    TERMINAL_STATUSES,
    VisitMedicine,
    VisitRecord,
)
from services import inventory_service, transaction_service

logger = logging.getLogger(__name__)

DISTRIBUTED = "distributed"
PRESCRIBED = "prescribed"

REJECT = "reject"
PARTIAL = "partial"
STOCK_POLICIES = (REJECT, PARTIAL)

VITAL_VALIDATORS = {
    "blood_pressure": validate_blood_pressure,
    "height_cm": validate_height_cm,
    "weight_kg": validate_weight_kg,
    "temperature_c": validate_temperature_c,
}
VITAL_LABELS = {
    "blood_pressure": "Blood pressure",
    "height_cm": "Height",
    "weight_kg": "Weight",
    "temperature_c": "Temperature",
}


@dataclass(frozen=True)
class MedicineLine:
    classification: str
    medicine_name: str
    quantity: int


@dataclass
class CompletionResult:
    visit_id: int
    status: str
    # (medicine_name, requested, dispensed)
    dispensed: list = field(default_factory=list)
    prescribed: list = field(default_factory=list)
    replayed: bool = False

    @property
    def shortfalls(self) -> list:
        return [(name, req, got) for name, req, got in self.dispensed if got < req]

    @property
    def fully_dispensed(self) -> bool:
        return not self.shortfalls


# ------------------------------------------
# Helpers
# ------------------------------------------
def _open_filter():
    """Queued by status, or flagged queued by an older row that never got a terminal status."""
    return or_(
        VisitRecord.status == QUEUED,
        and_(
            VisitRecord.queued.is_(True),
            or_(VisitRecord.status.is_(None), VisitRecord.status.notin_(TERMINAL_STATUSES)),
        ),
    )


def validate_vitals(vitals: dict | None, required=REQUIRED_VITALS) -> dict:
    vitals = vitals or {}
    cleaned = {}
    for name, validator in VITAL_VALIDATORS.items():
        cleaned[name] = validator(vitals.get(name))
    for name in required:
        if cleaned.get(name) is None:
            raise ValidationError(name, f"{VITAL_LABELS.get(name, name)} is required.")
    return cleaned


def _medicine_lines(items, field_name: str) -> list[MedicineLine]:
    lines = []
    for index, item in enumerate(items or []):
        if isinstance(item, MedicineLine):
            lines.append(item)
            continue
        if isinstance(item, dict):
            cls, name, qty = item.get("classification"), item.get("medicine_name"), item.get("quantity")
        else:
            cls, name, qty = item
        label = f"{field_name}[{index}]"
        lines.append(MedicineLine(
            classification=validate_required_text(cls, label, "Classification"),
            medicine_name=validate_required_text(name, label, "Medicine"),
            quantity=validate_quantity(qty, label),
        ))
    return lines


def _load_visit(db: Session, visit_id: int) -> VisitRecord:
    visit = db.query(VisitRecord).filter(VisitRecord.id == visit_id).first()
    if not visit:
        raise NotFoundError(f"Visit {visit_id} not found.")
    return visit


def _transition(db: Session, visit: VisitRecord, target: str, values: dict) -> int:
    """Guarded status change; returns the new version."""
    expected = visit.version
    rows = (
        db.query(VisitRecord)
        .filter(VisitRecord.id == visit.id)
        .filter(VisitRecord.version == expected)
        .filter(or_(VisitRecord.status.is_(None), VisitRecord.status.notin_(TERMINAL_STATUSES)))
        .update(
            {**values, VisitRecord.status: target, VisitRecord.version: expected + 1},
            synchronize_session=False,
        )
    )
    if rows != 1:
        current = db.query(VisitRecord.status).filter(VisitRecord.id == visit.id).scalar()
        if current in TERMINAL_STATUSES:
            raise IllegalTransitionError(visit.id, current, target)
        raise ConflictError("This visit was changed by someone else. Reload and try again.")
    return expected + 1


def _clear_patient_queue_flag(db: Session, patient_id: int):
    db.query(Patient).filter(Patient.id == patient_id).update(
        {Patient.queued: False, Patient.queued_at: None}, synchronize_session=False
    )
    queue_change(db, events.PATIENT, patient_id, 0, "dequeued")


def combine_doctor_notes(assessment: str, management: str) -> str:
    return f"Assessment / Diagnosis:\n{assessment}\n\nManagement:\n{management}"


# ------------------------------------------
# Create
# ------------------------------------------
def create_visit(db: Session, patient_id: int, vitals: dict | None = None,
                 chief_complaint: str | None = None, staff_id: int | None = None,
                 now: datetime | None = None) -> VisitRecord:
    """Put a patient in the queue with the vitals taken at intake."""
    cleaned = validate_vitals(vitals)

    with atomic(db):
        patient = db.query(Patient).filter(Patient.id == patient_id).first()
        if not patient:
            raise NotFoundError(f"Patient {patient_id} not found.")

        already = (
            db.query(VisitRecord.id)
            .filter(VisitRecord.patient_id == patient_id)
            .filter(_open_filter())
            .first()
        )
        if already:
            raise ConflictError(f"{patient.full_name} is already waiting in the queue.")

        stamp = now or now_utc()
        visit = VisitRecord(
            patient_id=patient_id,
            status=QUEUED,
            queued=True,
            version=1,
            chief_complaint=(chief_complaint or "").strip() or None,
            created_by=staff_id,
            created_at=stamp,
            queued_at=stamp,
            **cleaned,
        )
        db.add(visit)
        patient.queued = True
        patient.queued_at = stamp
        db.flush()
        queue_change(db, events.VISIT_RECORD, visit.id, 1, "created", patient_id=patient_id)
        queue_change(db, events.PATIENT, patient_id, 0, "queued")
        logger.info("Visit %s queued for patient %s", visit.id, patient_id)
    return visit


# ------------------------------------------
# Queue
# ------------------------------------------
def list_queued(db: Session):
    """Waiting visits, first come first served."""
    return (
        db.query(VisitRecord)
        .options(joinedload(VisitRecord.patient))
        .filter(_open_filter())
        .order_by(func.coalesce(VisitRecord.queued_at, VisitRecord.created_at).asc(), VisitRecord.id.asc())
        .all()
    )


def get_visit(db: Session, visit_id: int):
    return (
        db.query(VisitRecord)
        .options(joinedload(VisitRecord.patient))
        .filter(VisitRecord.id == visit_id)
        .first()
    )


# ------------------------------------------
# Complete
# ------------------------------------------
def _stored_result(visit: VisitRecord, replayed: bool) -> CompletionResult:
    result = CompletionResult(visit_id=visit.id, status=visit.status, replayed=replayed)
    for med in visit.medicines:
        if med.kind == DISTRIBUTED:
            result.dispensed.append((med.medicine_name, med.quantity, med.quantity_dispensed or 0))
        else:
            result.prescribed.append((med.medicine_name, med.quantity))
    return result


def complete_visit(db: Session, visit_id: int, assessment: str, management: str,
                   dispensed=(), prescribed=(), *, staff=None, idempotency_key: str | None = None,
                   insufficient_stock: str | None = None, today: date | None = None) -> CompletionResult:
    """
    Close a queued visit: record the doctor's assessment and management,
    take dispensed medicines out of stock (FEFO) and log one `out` movement
    per medicine, all in one transaction.

    `insufficient_stock` is "reject" (the whole completion is rolled back)
    or "partial" (what is on the shelf is dispensed and the shortfall is
    reported on the result). A retry with the same `idempotency_key` after
    success returns the stored outcome without dispensing again.
    """
    if idempotency_key:
        previous = db.query(VisitRecord).filter(VisitRecord.completion_key == idempotency_key).first()
        if previous is not None:
            if previous.id != visit_id:
                raise ConflictError("This completion key was already used for another visit.")
            logger.info("Visit %s completion replayed (key %s)", visit_id, idempotency_key)
            return _stored_result(previous, replayed=True)

    assessment = validate_required_text(assessment, "assessment", "Assessment / Diagnosis")
    management = validate_required_text(management, "management", "Management")
    dispense_lines = _medicine_lines(dispensed, "dispensed")
    prescribe_lines = _medicine_lines(prescribed, "prescribed")
    policy = (insufficient_stock or INSUFFICIENT_STOCK_POLICY).strip().lower()
    if policy not in STOCK_POLICIES:
        raise ValidationError("insufficient_stock", f"Policy must be one of {', '.join(STOCK_POLICIES)}.")
    today = today or clinic_today()

    visit = _load_visit(db, visit_id)
    if visit.status in TERMINAL_STATUSES:
        raise IllegalTransitionError(visit.id, visit.status, COMPLETED)

    staff_id = getattr(staff, "id", None)
    staff_name = getattr(staff, "full_name", None) or getattr(staff, "username", None)
    patient_id = visit.patient_id
    result = CompletionResult(visit_id=visit.id, status=COMPLETED)

    with atomic(db):
        version = _transition(db, visit, COMPLETED, {
            VisitRecord.doctor_assessment: assessment,
            VisitRecord.doctor_management: management,
            VisitRecord.doctor_notes: combine_doctor_notes(assessment, management),
            VisitRecord.doctor_id: staff_id,
            VisitRecord.doctor_full_name: staff_name,
            VisitRecord.completed_at: now_utc(),
            VisitRecord.queued: False,
            VisitRecord.completion_key: idempotency_key,
        })

        for line in dispense_lines:
            try:
                taken = inventory_service.decrement(
                    db, line.classification, line.medicine_name, line.quantity, today=today
                ).consumed
            except InsufficientStockError as exc:
                if policy == REJECT:
                    raise
                taken = exc.available
                logger.warning("Visit %s: dispensed %d of %d %s", visit.id, taken, line.quantity,
                               line.medicine_name)

            entry = inventory_service.find_medicine(db, line.classification, line.medicine_name)
            cls = entry.classification if entry else line.classification
            name = entry.medicine_name if entry else line.medicine_name
            if taken > 0:
                transaction_service.record(
                    db, OUT, cls, name,
                    inventory_service.dosage_form_for(db, cls, name, today=today),
                    taken,
                    visit_record_id=visit.id,
                    patient_id=patient_id,
                    staff_id=staff_id,
                    medicine_id=entry.id if entry else None,
                    note="Dispensed on visit completion",
                )
            db.add(VisitMedicine(
                visit_record_id=visit.id, kind=DISTRIBUTED, classification=cls,
                medicine_name=name, quantity=line.quantity, quantity_dispensed=taken,
            ))
            result.dispensed.append((name, line.quantity, taken))

        for line in prescribe_lines:
            db.add(VisitMedicine(
                visit_record_id=visit.id, kind=PRESCRIBED, classification=line.classification,
                medicine_name=line.medicine_name, quantity=line.quantity,
            ))
            result.prescribed.append((line.medicine_name, line.quantity))

        _clear_patient_queue_flag(db, patient_id)
        db.flush()
        queue_change(db, events.VISIT_RECORD, visit.id, version, COMPLETED, patient_id=patient_id)

    logger.info("Visit %s completed by %s (%d medicine(s) dispensed)",
                visit_id, staff_name, len(result.dispensed))
    return result


# ------------------------------------------
# Cancel
# ------------------------------------------
def cancel_visit(db: Session, visit_id: int, staff_id: int | None = None) -> VisitRecord:
    visit = _load_visit(db, visit_id)
    if visit.status in TERMINAL_STATUSES:
        raise IllegalTransitionError(visit.id, visit.status, CANCELLED)

    with atomic(db):
        version = _transition(db, visit, CANCELLED, {
            VisitRecord.queued: False,
            VisitRecord.cancelled_at: now_utc(),
        })
        _clear_patient_queue_flag(db, visit.patient_id)
        queue_change(db, events.VISIT_RECORD, visit.id, version, CANCELLED, staff_id=staff_id)

    logger.info("Visit %s cancelled by staff %s", visit_id, staff_id)
    return visit


# ------------------------------------------
# History
# ------------------------------------------
def past_records(db: Session, patient_id: int):
    """Closed visits for a patient, newest first."""
    return (
        db.query(VisitRecord)
        .filter(VisitRecord.patient_id == patient_id)
        .filter(VisitRecord.status.in_(TERMINAL_STATUSES))
        .order_by(VisitRecord.created_at.desc(), VisitRecord.id.desc())
        .all()
    )


def day_history(db: Session, day: date | None = None):
    """Visits completed during one clinic-time-zone day, in completion order."""
    start, end = clinic_day_bounds_utc(day or clinic_today())
    return (
        db.query(VisitRecord)
        .options(joinedload(VisitRecord.patient))
        .filter(VisitRecord.status == COMPLETED)
        .filter(VisitRecord.completed_at >= start)
        .filter(VisitRecord.completed_at < end)
        .order_by(VisitRecord.completed_at.asc(), VisitRecord.id.asc())
        .all()
    )


def queued_today_count(db: Session, day: date | None = None) -> int:
    """Check-ups entered into the queue during the day (cancelled ones excluded)."""
    start, end = clinic_day_bounds_utc(day or clinic_today())
    stamp = func.coalesce(VisitRecord.queued_at, VisitRecord.created_at)
    return (
        db.query(func.count(VisitRecord.id))
        .filter(stamp >= start)
        .filter(stamp < end)
        .filter(or_(VisitRecord.status.is_(None), VisitRecord.status != CANCELLED))
        .scalar()
    ) or 0
