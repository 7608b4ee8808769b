import logging
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import ALERT_PREVIEW_LIMIT, LOW_STOCK_THRESHOLD
from core.time_utils import clinic_today
from core.validators import match_key, normalize_text
from models.inventory import InventoryLot, MedicineCatalog

logger = logging.getLogger(__name__)

OUT = "OUT"
LOW = "LOW"
OK = "OK"


@dataclass(frozen=True)
class StockAlert:
    medicine_name: str
    quantity: int
    level: str


@dataclass
class AlertReport:
    items: list = field(default_factory=list)
    preview_limit: int = ALERT_PREVIEW_LIMIT

    @property
    def preview(self) -> list:
        return self.items[: self.preview_limit]

    @property
    def out(self) -> list:
        return [a for a in self.items if a.level == OUT]

    @property
    def low(self) -> list:
        return [a for a in self.items if a.level == LOW]

    def __len__(self):
        return len(self.items)


def alert_level(quantity: int, low_threshold: int = LOW_STOCK_THRESHOLD) -> str:
    if quantity <= 0:
        return OUT
    if quantity <= low_threshold:
        return LOW
    return OK


def _stock_by_name(db: Session, today: date) -> dict:
    """Non-expired quantity per medicine name (folded), over catalog names and lot names."""
    totals = {}
    labels = {}

    for (name,) in db.query(MedicineCatalog.medicine_name).all():
        key = match_key(name)
        totals.setdefault(key, 0)
        labels.setdefault(key, normalize_text(name))

    rows = (
        db.query(InventoryLot.medicine_name, func.coalesce(func.sum(InventoryLot.quantity), 0))
        .filter(InventoryLot.expiration_date >= today)
        .group_by(InventoryLot.medicine_name)
        .all()
    )
    for name, qty in rows:
        key = match_key(name)
        totals[key] = totals.get(key, 0) + int(qty or 0)
        labels.setdefault(key, normalize_text(name))

    # Names whose only lots are expired still count as out of stock
    for (name,) in db.query(InventoryLot.medicine_name).distinct().all():
        key = match_key(name)
        totals.setdefault(key, 0)
        labels.setdefault(key, normalize_text(name))

    return {labels[k]: q for k, q in totals.items()}


def evaluate_alerts(db: Session, today: date | None = None,
                    low_threshold: int = LOW_STOCK_THRESHOLD,
                    preview_limit: int = ALERT_PREVIEW_LIMIT) -> AlertReport:
    """
    Out-of-stock and low-stock medicines.

    OUT entries come first (by name), then LOW entries with the scarcest
    first. Medicines above the threshold are not listed.
    """
    today = today or clinic_today()
    stock = _stock_by_name(db, today)

    out_items = sorted(
        (StockAlert(name, qty, OUT) for name, qty in stock.items() if qty <= 0),
        key=lambda a: a.medicine_name.casefold(),
    )
    low_items = sorted(
        (StockAlert(name, qty, LOW) for name, qty in stock.items() if 0 < qty <= low_threshold),
        key=lambda a: (a.quantity, a.medicine_name.casefold()),
    )
    report = AlertReport(items=out_items + low_items, preview_limit=preview_limit)
    if report.items:
        logger.debug("Stock alerts: %d out, %d low", len(out_items), len(low_items))
    return report


def class_overview(db: Session, classification: str, today: date | None = None) -> list[dict]:
    """Every catalog medicine in a classification with its non-expired quantity, by name."""
    today = today or clinic_today()
    entries = (
        db.query(MedicineCatalog)
        .filter(MedicineCatalog.classification_key == match_key(classification))
        .all()
    )
    rows = (
        db.query(InventoryLot.name_key, func.coalesce(func.sum(InventoryLot.quantity), 0))
        .filter(InventoryLot.classification_key == match_key(classification))
        .filter(InventoryLot.expiration_date >= today)
        .group_by(InventoryLot.name_key)
        .all()
    )
    stock = {key: int(qty or 0) for key, qty in rows}

    overview = [
        {
            "medicine_name": entry.medicine_name,
            "dosage_form": entry.dosage_form,
            "quantity": stock.get(entry.name_key, 0),
            "level": alert_level(stock.get(entry.name_key, 0)),
        }
        for entry in entries
    ]
    return sorted(overview, key=lambda r: r["medicine_name"].casefold())
