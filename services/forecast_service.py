"""
Demand analytics over the dispense ledger.

Every figure here is re-aggregated from `out` transactions on each call, so
recomputing over the same closed window always gives the same answer.
Stock figures come from the current lot snapshot.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, timedelta

import pandas as pd
from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import (
    FORECAST_LOOKBACK_DAYS,
    LOW_STOCK_THRESHOLD,
    RESTOCK_HORIZON_MONTHS,
    STABLE_STOCK_THRESHOLD,
)
from core.errors import ValidationError
from core.time_utils import (
    add_months,
    as_utc,
    clinic_date_of,
    clinic_midnight_utc,
    clinic_today,
    clinic_year_bounds_utc,
    days_in_month,
)
from core.validators import match_key, normalize_text
from models.inventory import InventoryLot, MedicineCatalog
from models.transaction import DispenseTransaction, OUT
from services.inventory_service import on_hand

logger = logging.getLogger(__name__)

STABLE = "Stable"
LOW_STOCK = "LowStock"
REORDER_SOON = "ReorderSoon"
MONITOR = "Monitor"

MONTH_LABELS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
                "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
LINE_COLUMNS = ["classification", "medicine_name", "dosage_form"]


@dataclass(frozen=True)
class StockThresholds:
    low: int = LOW_STOCK_THRESHOLD
    stable: int = STABLE_STOCK_THRESHOLD


@dataclass(frozen=True)
class MedicineForecast:
    classification: str
    medicine_name: str
    dosage_form: str | None
    on_hand: int
    observed_month_to_date: int
    daily_average: float
    forecast: int
    status: str
    restock_before: date | None


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _out_query(db: Session, classification: str | None = None, medicine_name: str | None = None,
               dosage_form: str | None = None):
    q = db.query(DispenseTransaction).filter(DispenseTransaction.direction == OUT)
    if classification:
        q = q.filter(DispenseTransaction.classification_key == match_key(classification))
    if medicine_name:
        q = q.filter(DispenseTransaction.name_key == match_key(medicine_name))
    if dosage_form:
        q = q.filter(DispenseTransaction.form_key == match_key(dosage_form))
    return q


def _catalog_labels(db: Session) -> dict:
    """Display names by folded (classification, medicine) key."""
    return {
        (entry.classification_key, entry.name_key): (entry.classification, entry.medicine_name)
        for entry in db.query(MedicineCatalog).all()
    }


# ------------------------------------------
# Observed demand
# ------------------------------------------
def observed_demand(db: Session, start, end, classification: str | None = None,
                    dosage_form: str | None = None, by_dosage_form: bool = False) -> dict:
    """
    Sum of `out` quantities with created_at in [start, end).

    Keyed by medicine name, or by (medicine name, dosage form) when
    `by_dosage_form` is set.
    """
    q = _out_query(db, classification=classification, dosage_form=dosage_form)
    q = q.filter(DispenseTransaction.created_at >= as_utc(start))
    q = q.filter(DispenseTransaction.created_at < as_utc(end))

    catalog = _catalog_labels(db)
    names = {}
    forms = {}
    totals = {}
    for txn in q.all():
        entry = catalog.get((txn.classification_key, txn.name_key))
        name = names.setdefault(txn.name_key, entry[1] if entry else normalize_text(txn.medicine_name))
        if by_dosage_form:
            form = forms.setdefault(txn.form_key, normalize_text(txn.dosage_form) or None)
            key = (name, form)
        else:
            key = name
        totals[key] = totals.get(key, 0) + int(txn.quantity)
    return totals


def daily_average(db: Session, medicine_name: str, as_of: date | None = None,
                  lookback_days: int = FORECAST_LOOKBACK_DAYS,
                  classification: str | None = None) -> float:
    """Out quantity over the `lookback_days` days ending with `as_of`, per day."""
    if lookback_days <= 0:
        raise ValidationError("lookback_days", "Lookback must be at least one day.")
    as_of = as_of or clinic_today()
    end = clinic_midnight_utc(as_of + timedelta(days=1))
    start = clinic_midnight_utc(as_of + timedelta(days=1 - lookback_days))
    total = (
        _out_query(db, classification=classification, medicine_name=medicine_name)
        .filter(DispenseTransaction.created_at >= start)
        .filter(DispenseTransaction.created_at < end)
        .with_entities(func.coalesce(func.sum(DispenseTransaction.quantity), 0))
        .scalar()
    )
    return int(total or 0) / lookback_days


def forecast_demand(daily_avg: float, days: int) -> int:
    """Expected units over the next `days` days, rounded half up."""
    return round_half_up(daily_avg * days)


def classify_stock(stock: int, forecast: int, thresholds: StockThresholds | None = None) -> str:
    thresholds = thresholds or StockThresholds()
    if stock > thresholds.stable:
        return STABLE
    if stock <= thresholds.low:
        return LOW_STOCK
    if stock <= forecast:
        return REORDER_SOON
    return MONITOR


def restock_projection(stock: int, daily_avg: float, as_of: date | None = None,
                       horizon_months: int = RESTOCK_HORIZON_MONTHS) -> date | None:
    """
    First month (as its first day) in which projected stock runs out.

    Starts with the month containing `as_of` and draws down a full month of
    demand each step. None when demand is zero or stock outlasts the horizon.
    """
    if daily_avg <= 0:
        return None
    as_of = as_of or clinic_today()
    remaining = float(stock)
    for step in range(horizon_months):
        month = add_months(as_of, step)
        remaining -= daily_avg * days_in_month(month.year, month.month)
        if remaining <= 0:
            return month
    return None


def _medicine_lines(db: Session, classification: str | None, dosage_form: str | None) -> list[tuple]:
    """(classification, medicine_name, dosage_form) per distinct medicine, catalog first."""
    lines = {}
    for entry in db.query(MedicineCatalog).all():
        lines.setdefault((entry.classification_key, entry.name_key),
                         (entry.classification, entry.medicine_name, entry.dosage_form))
    for lot in db.query(InventoryLot).all():
        lines.setdefault((match_key(lot.classification), match_key(lot.medicine_name)),
                         (normalize_text(lot.classification), normalize_text(lot.medicine_name), lot.dosage_form))

    selected = []
    for cls, name, form in lines.values():
        if classification and match_key(cls) != match_key(classification):
            continue
        if dosage_form and match_key(form) != match_key(dosage_form):
            continue
        selected.append((cls, name, form))
    return sorted(selected, key=lambda t: (t[0].casefold(), t[1].casefold()))


def forecast_report(db: Session, as_of: date | None = None, next_period_days: int = 30,
                    classification: str | None = None, dosage_form: str | None = None,
                    lookback_days: int = FORECAST_LOOKBACK_DAYS,
                    thresholds: StockThresholds | None = None) -> list[MedicineForecast]:
    """Per medicine line: on hand, month-to-date demand, daily average, forecast, status, restock month."""
    as_of = as_of or clinic_today()
    thresholds = thresholds or StockThresholds()
    month_start = clinic_midnight_utc(as_of.replace(day=1))
    period_end = clinic_midnight_utc(as_of + timedelta(days=1))

    report = []
    for cls, name, form in _medicine_lines(db, classification, dosage_form):
        stock = on_hand(db, cls, name, today=as_of)
        observed = (
            _out_query(db, classification=cls, medicine_name=name)
            .filter(DispenseTransaction.created_at >= month_start)
            .filter(DispenseTransaction.created_at < period_end)
            .with_entities(func.coalesce(func.sum(DispenseTransaction.quantity), 0))
            .scalar()
        )
        avg = daily_average(db, name, as_of, lookback_days, classification=cls)
        forecast = forecast_demand(avg, next_period_days)
        report.append(MedicineForecast(
            classification=cls,
            medicine_name=name,
            dosage_form=form,
            on_hand=stock,
            observed_month_to_date=int(observed or 0),
            daily_average=avg,
            forecast=forecast,
            status=classify_stock(stock, forecast, thresholds),
            restock_before=restock_projection(stock, avg, as_of),
        ))
    logger.debug("Forecast report for %s: %d medicine line(s)", as_of, len(report))
    return report


def forecast_frame(report: list[MedicineForecast]) -> pd.DataFrame:
    columns = ["Classification", "Medicine", "Form", "On hand", "Used this month",
               "Daily avg", "Forecast", "Status", "Restock before"]
    rows = [
        [
            r.classification,
            r.medicine_name,
            r.dosage_form or "",
            r.on_hand,
            r.observed_month_to_date,
            round(r.daily_average, 3),
            r.forecast,
            r.status,
            r.restock_before.strftime("%B %Y") if r.restock_before else "",
        ]
        for r in report
    ]
    return pd.DataFrame(rows, columns=columns)


# ------------------------------------------
# Monthly / yearly demand
# ------------------------------------------
def _line_key(txn: DispenseTransaction) -> tuple:
    return (txn.classification_key, txn.name_key, txn.form_key)


def _line_label(txn: DispenseTransaction, catalog: dict) -> tuple:
    entry = catalog.get((txn.classification_key, txn.name_key))
    cls, name = entry if entry else (normalize_text(txn.classification), normalize_text(txn.medicine_name))
    return (cls, name, normalize_text(txn.dosage_form))


def display_year(db: Session, classification: str | None = None, medicine_name: str | None = None,
                 today: date | None = None) -> int:
    """Most recent year with dispensing data for the filters, else the current year."""
    today = today or clinic_today()
    years = {
        clinic_date_of(txn.created_at).year
        for txn in _out_query(db, classification=classification, medicine_name=medicine_name).all()
    }
    return max(years) if years else today.year


def monthly_demand(db: Session, year: int, classification: str | None = None,
                   medicine_name: str | None = None) -> pd.DataFrame:
    """Twelve monthly `out` totals per medicine line for one year (clinic time zone)."""
    start, end = clinic_year_bounds_utc(year)
    txns = (
        _out_query(db, classification=classification, medicine_name=medicine_name)
        .filter(DispenseTransaction.created_at >= start)
        .filter(DispenseTransaction.created_at < end)
        .all()
    )

    catalog = _catalog_labels(db)
    labels = {}
    buckets = {}
    for txn in txns:
        key = _line_key(txn)
        labels.setdefault(key, _line_label(txn, catalog))
        months = buckets.setdefault(key, [0] * 12)
        months[clinic_date_of(txn.created_at).month - 1] += int(txn.quantity)

    rows = [list(labels[key]) + months + [sum(months)] for key, months in buckets.items()]
    frame = pd.DataFrame(rows, columns=LINE_COLUMNS + MONTH_LABELS + ["Total"])
    return frame.sort_values(LINE_COLUMNS, key=lambda s: s.str.casefold()).reset_index(drop=True)


def forecast_next_year(series_by_year: dict, next_year: int) -> tuple[float, int]:
    """
    Average year-over-year growth and the value it projects for `next_year`.

    Growth is averaged over consecutive pairs whose earlier year is non-zero.
    With fewer than two years of history the last value is carried forward.
    """
    years = sorted(y for y in series_by_year if y < next_year)
    if len(years) < 2:
        last = series_by_year.get(years[-1], 0) if years else 0
        return 0.0, round_half_up(last)

    rates = []
    for prev_year, year in zip(years, years[1:]):
        prev = series_by_year.get(prev_year, 0) or 0
        cur = series_by_year.get(year, 0) or 0
        if prev > 0:
            rates.append((cur - prev) / prev)

    avg = sum(rates) / len(rates) if rates else 0.0
    last_value = series_by_year.get(years[-1], 0) or 0
    return avg * 100, round_half_up(last_value * (1 + avg))


def yearly_demand(db: Session, today: date | None = None, classification: str | None = None,
                  medicine_name: str | None = None) -> pd.DataFrame:
    """
    The last three complete years per medicine line plus a growth-based
    forecast for the current year (column "<year>F").
    """
    today = today or clinic_today()
    current = today.year
    years = [current - 3, current - 2, current - 1]
    start, _ = clinic_year_bounds_utc(years[0])
    _, end = clinic_year_bounds_utc(years[-1])

    catalog = _catalog_labels(db)
    labels = {}
    buckets = {}
    for entry in db.query(MedicineCatalog).all():
        if classification and entry.classification_key != match_key(classification):
            continue
        if medicine_name and entry.name_key != match_key(medicine_name):
            continue
        key = (entry.classification_key, entry.name_key, match_key(entry.dosage_form))
        labels.setdefault(key, (entry.classification, entry.medicine_name, normalize_text(entry.dosage_form)))
        buckets.setdefault(key, {y: 0 for y in years})

    txns = (
        _out_query(db, classification=classification, medicine_name=medicine_name)
        .filter(DispenseTransaction.created_at >= start)
        .filter(DispenseTransaction.created_at < end)
        .all()
    )
    for txn in txns:
        key = _line_key(txn)
        labels.setdefault(key, _line_label(txn, catalog))
        series = buckets.setdefault(key, {y: 0 for y in years})
        series[clinic_date_of(txn.created_at).year] += int(txn.quantity)

    rows = []
    for key, series in buckets.items():
        growth, predicted = forecast_next_year(series, current)
        rows.append(list(labels[key]) + [series[y] for y in years] + [predicted, round(growth, 1)])

    columns = LINE_COLUMNS + [str(y) for y in years] + [f"{current}F", "avg_growth_pct"]
    frame = pd.DataFrame(rows, columns=columns)
    return frame.sort_values(LINE_COLUMNS, key=lambda s: s.str.casefold()).reset_index(drop=True)
