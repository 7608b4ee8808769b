"""
Dispense transaction log.

Append-only record of every stock movement. Demand analytics re-aggregate
from this table on every read; InventoryLot only says what is on the shelf
now.
"""

import logging
from datetime import date, datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from core import events
from core.database import queue_change
from core.errors import ValidationError
from core.time_utils import now_utc, as_utc, clinic_day_bounds_utc, clinic_today
from core.validators import match_key, validate_quantity
from models.inventory import InventoryLot
from models.patient import Patient
from models.transaction import DispenseTransaction, DIRECTIONS, OUT

logger = logging.getLogger(__name__)


# ------------------------------------------
# Append
# ------------------------------------------
def record(
    db: Session,
    direction: str,
    classification: str,
    medicine_name: str,
    dosage_form: str | None,
    quantity,
    *,
    visit_record_id: int | None = None,
    patient_id: int | None = None,
    staff_id: int | None = None,
    note: str | None = None,
    medicine_id: int | None = None,
    created_at: datetime | None = None,
) -> DispenseTransaction:
    """Append one ledger entry. Flushes; the caller owns the commit."""
    if direction not in DIRECTIONS:
        raise ValidationError("direction", f"Direction must be one of {', '.join(DIRECTIONS)}.")
    qty = validate_quantity(quantity)

    txn = DispenseTransaction(
        direction=direction,
        medicine_id=medicine_id,
        classification=classification,
        medicine_name=medicine_name,
        dosage_form=dosage_form,
        quantity=qty,
        visit_record_id=visit_record_id,
        patient_id=patient_id,
        staff_id=staff_id,
        note=note,
        created_at=as_utc(created_at) if created_at else now_utc(),
    )
    db.add(txn)
    db.flush()
    queue_change(db, events.DISPENSE_TRANSACTION, txn.id, 1, "created",
                 direction=direction, medicine_name=medicine_name, quantity=qty)
    logger.info("Ledger %s %s x%d (visit=%s)", direction, medicine_name, qty, visit_record_id)
    return txn


# ------------------------------------------
# Readers
# ------------------------------------------
def list_transactions(
    db: Session,
    start: datetime | None = None,
    end: datetime | None = None,
    direction: str | None = None,
    classification: str | None = None,
    medicine_name: str | None = None,
):
    """Transactions with created_at in [start, end), oldest first."""
    q = db.query(DispenseTransaction)
    if start is not None:
        q = q.filter(DispenseTransaction.created_at >= as_utc(start))
    if end is not None:
        q = q.filter(DispenseTransaction.created_at < as_utc(end))
    if direction:
        q = q.filter(DispenseTransaction.direction == direction)
    if classification:
        q = q.filter(DispenseTransaction.classification_key == match_key(classification))
    if medicine_name:
        q = q.filter(DispenseTransaction.name_key == match_key(medicine_name))
    return q.order_by(DispenseTransaction.created_at.asc(), DispenseTransaction.id.asc()).all()


def transactions_for_visit(db: Session, visit_record_id: int):
    return (
        db.query(DispenseTransaction)
        .filter(DispenseTransaction.visit_record_id == visit_record_id)
        .order_by(DispenseTransaction.id.asc())
        .all()
    )


def dispensed_on_day(db: Session, day: date) -> list[dict]:
    """Out movements in one clinic-time-zone day, newest first, with patient info."""
    start, end = clinic_day_bounds_utc(day)
    rows = (
        db.query(DispenseTransaction, Patient)
        .outerjoin(Patient, DispenseTransaction.patient_id == Patient.id)
        .filter(DispenseTransaction.direction == OUT)
        .filter(DispenseTransaction.created_at >= start)
        .filter(DispenseTransaction.created_at < end)
        .order_by(DispenseTransaction.created_at.desc(), DispenseTransaction.id.desc())
        .all()
    )
    return [
        {
            "id": txn.id,
            "created_at": as_utc(txn.created_at),
            "classification": txn.classification,
            "medicine_name": txn.medicine_name,
            "dosage_form": txn.dosage_form,
            "quantity": txn.quantity,
            "patient_name": patient.full_name if patient else "—",
            "family_number": patient.family_number if patient else "—",
            "note": txn.note,
        }
        for txn, patient in rows
    ]


def lifetime_totals(db: Session, today: date | None = None) -> dict:
    """Current non-expired stock next to everything ever distributed."""
    today = today or clinic_today()
    stock = (
        db.query(func.coalesce(func.sum(InventoryLot.quantity), 0))
        .filter(InventoryLot.expiration_date >= today)
        .scalar()
    )
    distributed = (
        db.query(func.coalesce(func.sum(DispenseTransaction.quantity), 0))
        .filter(DispenseTransaction.direction == OUT)
        .scalar()
    )
    return {"stock": int(stock or 0), "distributed": int(distributed or 0)}
