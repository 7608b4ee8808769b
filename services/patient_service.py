import logging
from datetime import date

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from core import events
from core.database import atomic, queue_change
from core.errors import NotFoundError, ValidationError
from core.time_utils import clinic_today
from core.validators import (
    age_on,
    validate_birthdate,
    validate_family_number,
    validate_name,
    validate_phone,
)
from models.patient import Patient
from services import visit_service

logger = logging.getLogger(__name__)

SEXES = ("MALE", "FEMALE")


def _fold(value) -> str:
    return " ".join(str(value or "").split()).casefold()


# ------------------------------------------
# Family numbers (zero-padded, e.g. 004)
# ------------------------------------------
def next_family_number(db: Session) -> str:
    numbers = [row[0] for row in db.query(Patient.family_number).distinct().all()]
    highest = max((int(n) for n in numbers if n and n.isdigit()), default=0)
    return f"{highest + 1:03d}"


def family_surname(db: Session, family_number: str) -> str | None:
    """Surname already registered under a family number, if any."""
    padded = validate_family_number(family_number)
    row = (
        db.query(Patient.surname)
        .filter(Patient.family_number == padded)
        .order_by(Patient.id.asc())
        .first()
    )
    return row[0] if row else None


def family_members(db: Session, family_number: str):
    padded = validate_family_number(family_number)
    return (
        db.query(Patient)
        .filter(Patient.family_number == padded)
        .order_by(Patient.surname, Patient.first_name)
        .all()
    )


# ------------------------------------------
# Register
# ------------------------------------------
def register_patient(db: Session, *, family_number, surname, first_name, sex, birthdate: date,
                     emergency_contact_name, emergency_relation, emergency_contact_number,
                     middle_name=None, contact_number=None, proceed_to_queue: bool = False,
                     vitals: dict | None = None, chief_complaint: str | None = None,
                     staff_id: int | None = None, today: date | None = None) -> Patient:
    """
    Create a patient record and, when `proceed_to_queue` is set, a queued
    visit carrying the intake vitals. Both are saved together or not at all.
    """
    today = today or clinic_today()
    padded = validate_family_number(family_number)
    surname = validate_name(surname, "surname")
    first_name = validate_name(first_name, "first_name")
    middle_name = validate_name(middle_name, "middle_name", required=False)
    sex = (sex or "").strip().upper()
    if sex not in SEXES:
        raise ValidationError("sex", "Sex is required.")
    birthdate = validate_birthdate(birthdate, today)
    contact = validate_phone(contact_number, "contact_number")
    emergency_number = validate_phone(emergency_contact_number, "emergency_contact_number", required=True)
    emergency_name = validate_name(emergency_contact_name, "emergency_contact_name")
    relation = validate_name(emergency_relation, "emergency_relation")
    if not proceed_to_queue:
        visit_service.validate_vitals(vitals, required=())

    locked = family_surname(db, padded)
    if locked and _fold(locked) != _fold(surname):
        raise ValidationError(
            "surname",
            f'Family Number is already assigned to surname "{locked}". '
            "Please use that surname or choose a different Family Number.",
        )

    with atomic(db):
        patient = Patient(
            family_number=padded,
            surname=surname,
            first_name=first_name,
            middle_name=middle_name,
            sex=sex,
            birthdate=birthdate,
            age=age_on(birthdate, today),
            contact_number=contact,
            emergency_contact_name=emergency_name,
            emergency_relation=relation,
            emergency_contact_number=emergency_number,
            created_by=staff_id,
        )
        db.add(patient)
        db.flush()
        queue_change(db, events.PATIENT, patient.id, 0, "created")

        if proceed_to_queue:
            visit_service.create_visit(db, patient.id, vitals, chief_complaint, staff_id=staff_id)

    logger.info("Registered patient %s (family %s)", patient.id, padded)
    return patient


# ------------------------------------------
# Lookup
# ------------------------------------------
def get_patient(db: Session, patient_id: int) -> Patient:
    patient = db.query(Patient).filter(Patient.id == patient_id).first()
    if not patient:
        raise NotFoundError(f"Patient {patient_id} not found.")
    return patient


def list_patients(db: Session, search: str | None = None):
    q = db.query(Patient)
    if search and search.strip():
        needle = f"%{search.strip().lower()}%"
        q = q.filter(or_(
            func.lower(Patient.surname).like(needle),
            func.lower(Patient.first_name).like(needle),
            func.lower(Patient.middle_name).like(needle),
            Patient.family_number.like(needle),
        ))
    return q.order_by(Patient.family_number, Patient.surname, Patient.first_name).all()


def update_emergency_info(db: Session, patient_id: int, *, emergency_contact_name=None,
                          emergency_relation=None, emergency_contact_number=None) -> Patient:
    patient = get_patient(db, patient_id)
    with atomic(db):
        if emergency_contact_name is not None:
            patient.emergency_contact_name = validate_name(emergency_contact_name, "emergency_contact_name")
        if emergency_relation is not None:
            patient.emergency_relation = validate_name(emergency_relation, "emergency_relation")
        if emergency_contact_number is not None:
            patient.emergency_contact_number = validate_phone(
                emergency_contact_number, "emergency_contact_number", required=True
            )
        queue_change(db, events.PATIENT, patient.id, 0, "updated")
    return patient
