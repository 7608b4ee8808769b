"""
Inventory ledger.

Stock is held as lots (medicine + dosage form + expiry + quantity). Expired
lots stay in the table but are invisible to allocation and on-hand totals.
Dispensing walks lots First-Expire-First-Out; every lot update is a
compare-and-swap on the lot's version so two terminals dispensing the same
medicine cannot overwrite each other's decrement.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import List, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from core import events
from core.config import DECREMENT_MAX_RETRIES
from core.database import atomic, queue_change
from core.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from core.time_utils import add_months, clinic_today
from core.validators import match_key, normalize_text, validate_quantity, validate_required_text
from models.inventory import InventoryLot, MedicineCatalog
from models.transaction import IN, OUT
from services import transaction_service

logger = logging.getLogger(__name__)


@dataclass
class DecrementResult:
    medicine: str
    requested: int
    # (lot_id, quantity taken) in the order the lots were consumed
    allocations: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def consumed(self) -> int:
        return sum(q for _, q in self.allocations)


# ------------------------------------------
# Catalog
# ------------------------------------------
def find_medicine(db: Session, classification: str, medicine_name: str) -> MedicineCatalog | None:
    return (
        db.query(MedicineCatalog)
        .filter(MedicineCatalog.classification_key == match_key(classification))
        .filter(MedicineCatalog.name_key == match_key(medicine_name))
        .first()
    )


def ensure_catalog_entry(db: Session, classification: str, medicine_name: str,
                         dosage_form: str | None = None) -> MedicineCatalog:
    """Upsert on (classification, medicine name) so the medicine shows up in selection menus."""
    entry = find_medicine(db, classification, medicine_name)
    form = normalize_text(dosage_form) or None
    if entry is None:
        entry = MedicineCatalog(
            classification=normalize_text(classification),
            medicine_name=normalize_text(medicine_name),
            dosage_form=form,
            classification_key=match_key(classification),
            name_key=match_key(medicine_name),
        )
        db.add(entry)
        db.flush()
        queue_change(db, events.MEDICINE_CATALOG, entry.id, 1, "created")
        logger.info("Catalog entry created: %s / %s", entry.classification, entry.medicine_name)
    elif form and entry.dosage_form != form:
        entry.dosage_form = form
        db.flush()
    return entry


def list_catalog(db: Session, classification: str | None = None):
    q = db.query(MedicineCatalog)
    if classification:
        q = q.filter(MedicineCatalog.classification_key == match_key(classification))
    return q.order_by(MedicineCatalog.classification, MedicineCatalog.medicine_name).all()


def classifications(db: Session) -> list[str]:
    rows = db.query(MedicineCatalog.classification).distinct().all()
    return sorted({r[0] for r in rows}, key=str.casefold)


# ------------------------------------------
# Queries
# ------------------------------------------
def _lots_query(db: Session, classification: str | None, medicine_name: str | None):
    q = db.query(InventoryLot)
    if medicine_name:
        name_match = InventoryLot.name_key == match_key(medicine_name)
        if classification:
            name_match = and_(name_match, InventoryLot.classification_key == match_key(classification))
            entry = find_medicine(db, classification, medicine_name)
            if entry is not None:
                name_match = or_(InventoryLot.medicine_id == entry.id, name_match)
        q = q.filter(name_match)
    elif classification:
        q = q.filter(InventoryLot.classification_key == match_key(classification))
    return q


def list_available(db: Session, classification: str | None = None, medicine_name: str | None = None,
                   today: date | None = None):
    """Non-expired lots, soonest expiry first."""
    today = today or clinic_today()
    return (
        _lots_query(db, classification, medicine_name)
        .filter(InventoryLot.expiration_date >= today)
        .order_by(InventoryLot.expiration_date.asc(), InventoryLot.id.asc())
        .all()
    )


def on_hand(db: Session, classification: str | None = None, medicine_name: str | None = None,
            today: date | None = None) -> int:
    today = today or clinic_today()
    total = (
        _lots_query(db, classification, medicine_name)
        .with_entities(func.coalesce(func.sum(InventoryLot.quantity), 0))
        .filter(InventoryLot.expiration_date >= today)
        .scalar()
    )
    return int(total or 0)


def list_lots(db: Session, search: str | None = None):
    """Every lot (expired and empty ones included), newest first."""
    lots = db.query(InventoryLot).order_by(InventoryLot.id.desc()).all()
    if search and search.strip():
        needle = search.strip().lower()
        lots = [
            lot for lot in lots
            if needle in " ".join(
                str(v or "") for v in (lot.classification, lot.medicine_name, lot.dosage_form,
                                       lot.expiration_date, make_lot_code(lot))
            ).lower()
        ]
    return lots


def dosage_form_for(db: Session, classification: str, medicine_name: str, today: date | None = None) -> str | None:
    """Catalog form first, else the form of the soonest-expiring available lot."""
    entry = find_medicine(db, classification, medicine_name)
    if entry is not None and entry.dosage_form:
        return entry.dosage_form
    lots = list_available(db, classification, medicine_name, today=today)
    return lots[0].dosage_form if lots else None


# ------------------------------------------
# FEFO decrement
# ------------------------------------------
def _compare_and_swap(db: Session, lot: InventoryLot, used: int) -> bool:
    rows = (
        db.query(InventoryLot)
        .filter(InventoryLot.id == lot.id)
        .filter(InventoryLot.version == lot.version)
        .filter(InventoryLot.quantity >= used)
        .update(
            {
                InventoryLot.quantity: InventoryLot.quantity - used,
                InventoryLot.version: InventoryLot.version + 1,
            },
            synchronize_session=False,
        )
    )
    if rows != 1:
        return False
    new_version = lot.version + 1
    db.expire(lot, ["quantity", "version"])
    queue_change(db, events.INVENTORY_LOT, lot.id, new_version, "updated", taken=used)
    return True


def decrement(db: Session, classification: str, medicine_name: str, quantity, *,
              today: date | None = None, max_retries: int = DECREMENT_MAX_RETRIES) -> DecrementResult:
    """
    Take `quantity` units of a medicine from stock, soonest-expiring lot first.

    Changes are flushed inside the caller's transaction; the caller commits.
    When stock runs out, whatever was available has already been taken and
    InsufficientStockError is raised carrying those allocations: roll back to
    reject the dispense, or commit to keep the partial fulfilment.
    """
    requested = validate_quantity(quantity)
    today = today or clinic_today()
    result = DecrementResult(medicine=medicine_name, requested=requested)
    remaining = requested
    conflicts = 0

    while remaining > 0:
        lots = (
            _lots_query(db, classification, medicine_name)
            .filter(InventoryLot.expiration_date >= today)
            .filter(InventoryLot.quantity > 0)
            .order_by(InventoryLot.expiration_date.asc(), InventoryLot.id.asc())
            .populate_existing()
            .all()
        )

        lost_race = False
        for lot in lots:
            if remaining <= 0:
                break
            used = min(lot.quantity, remaining)
            if not _compare_and_swap(db, lot, used):
                lost_race = True
                break
            result.allocations.append((lot.id, used))
            remaining -= used

        if not lost_race:
            break
        conflicts += 1
        if conflicts > max_retries:
            raise ConflictError(
                f"Stock for {medicine_name} is being changed by another user. Please try again."
            )
        logger.warning("Lot changed underneath decrement of %s; retry %d", medicine_name, conflicts)

    if remaining > 0:
        available = requested - remaining
        logger.warning(
            "Not enough stock for %s / %s: requested %d, available %d",
            classification, medicine_name, requested, available,
        )
        raise InsufficientStockError(medicine_name, requested, available, result.allocations)

    return result


# ------------------------------------------
# Intake / removal
# ------------------------------------------
def _coerce_date(value, field_name: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(field_name, "Enter a valid date (YYYY-MM-DD).")


def add_lot(db: Session, classification: str, medicine_name: str, dosage_form: str, quantity,
            expiration_date, *, staff_id: int | None = None, today: date | None = None,
            note: str = "Stock intake") -> InventoryLot:
    """Receive a new lot, register the medicine in the catalog and log an `in` movement."""
    classification = normalize_text(validate_required_text(classification, "classification", "Classification"))
    medicine_name = normalize_text(validate_required_text(medicine_name, "medicine_name", "Medicine name"))
    dosage_form = normalize_text(validate_required_text(dosage_form, "dosage_form", "Dosage form"))
    qty = validate_quantity(quantity)
    if expiration_date in (None, ""):
        raise ValidationError("expiration_date", "Expiration date is required.")
    expiry = _coerce_date(expiration_date, "expiration_date")
    today = today or clinic_today()
    if expiry < today:
        raise ValidationError("expiration_date", "Expiration date cannot be earlier than today.")

    with atomic(db):
        entry = ensure_catalog_entry(db, classification, medicine_name, dosage_form)
        lot = InventoryLot(
            medicine_id=entry.id,
            classification=entry.classification,
            medicine_name=entry.medicine_name,
            dosage_form=dosage_form,
            quantity=qty,
            expiration_date=expiry,
            version=1,
        )
        db.add(lot)
        db.flush()
        transaction_service.record(
            db, IN, entry.classification, entry.medicine_name, dosage_form, qty,
            staff_id=staff_id, note=note, medicine_id=entry.id,
        )
        queue_change(db, events.INVENTORY_LOT, lot.id, 1, "created")
    return lot


def make_lot_code(lot: InventoryLot) -> str:
    """Human-readable lot code, e.g. AMO-T2501-007."""
    words = re.sub(r"[^A-Za-z]", " ", lot.medicine_name or "").split()
    code = "".join(w[0].upper() for w in words)[:3] or "MED"
    form = (lot.dosage_form or "X")[:1].upper() or "X"
    expiry = lot.expiration_date
    yy = f"{expiry.year % 100:02d}" if expiry else "00"
    mm = f"{expiry.month:02d}" if expiry else "00"
    tail = f"{(lot.id or 0) % 1000:03d}"
    return f"{code}-{form}{yy}{mm}-{tail}"


def resolve_lot_code(db: Session, code: str) -> InventoryLot | None:
    """Lot whose code matches; several matches resolve to the newest lot."""
    target = (code or "").strip().upper()
    if not target:
        return None
    matches = [lot for lot in db.query(InventoryLot).all() if make_lot_code(lot) == target]
    if not matches:
        return None
    return max(matches, key=lambda lot: lot.id)


def remove_lot(db: Session, lot_ref, *, staff_id: int | None = None) -> dict:
    """Operator removal of a whole lot (by id or lot code), logged as an `out` movement."""
    with atomic(db):
        if isinstance(lot_ref, int):
            lot = db.query(InventoryLot).filter(InventoryLot.id == lot_ref).first()
        else:
            lot = resolve_lot_code(db, str(lot_ref))
        if lot is None:
            raise NotFoundError(f"No stock lot matches '{lot_ref}'.")

        code = make_lot_code(lot)
        snapshot = {
            "lot_id": lot.id,
            "code": code,
            "classification": lot.classification,
            "medicine_name": lot.medicine_name,
            "dosage_form": lot.dosage_form,
            "quantity_removed": lot.quantity,
            "medicine_id": lot.medicine_id,
        }
        version = lot.version

        deleted = (
            db.query(InventoryLot)
            .filter(InventoryLot.id == lot.id)
            .filter(InventoryLot.version == version)
            .delete(synchronize_session=False)
        )
        if deleted != 1:
            raise ConflictError("This lot was changed by someone else. Reload and try again.")
        db.expunge(lot)

        if snapshot["quantity_removed"] > 0:
            transaction_service.record(
                db, OUT, snapshot["classification"], snapshot["medicine_name"], snapshot["dosage_form"],
                snapshot["quantity_removed"], staff_id=staff_id, medicine_id=snapshot["medicine_id"],
                note=f"Removed lot {code}",
            )
        queue_change(db, events.INVENTORY_LOT, snapshot["lot_id"], version + 1, "deleted")
        logger.info("Lot %s removed (%d units)", code, snapshot["quantity_removed"])
    return snapshot


# ------------------------------------------
# Expiry proximity
# ------------------------------------------
def expiring_lots(db: Session, year: int | None = None, month: int | None = None) -> tuple[list, str]:
    """
    Lots expiring in a target year (or year + month).

    With no exact match, falls back to the closest future expiries: first
    those within two years after the target window, then the rest.
    """
    lots = (
        db.query(InventoryLot)
        .filter(InventoryLot.expiration_date.isnot(None))
        .order_by(InventoryLot.expiration_date.asc(), InventoryLot.id.asc())
        .all()
    )
    if not lots or year is None:
        return lots, ""

    target_start = date(year, month or 1, 1)
    target_end = add_months(target_start, 1 if month else 12)
    in_range = [lot for lot in lots if target_start <= lot.expiration_date < target_end]
    if in_range:
        return in_range, ""

    horizon = add_months(target_end, 24)
    within = [lot for lot in lots if target_end <= lot.expiration_date < horizon]
    beyond = [lot for lot in lots if lot.expiration_date >= horizon]
    if within or beyond:
        note = ("No exact matches. Showing the closest future expiries: first within the next "
                "2 years, then more than 2 years ahead.")
    else:
        note = "No future expiries found."
    return within + beyond, note
