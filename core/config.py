import os
import logging

from dotenv import load_dotenv


# Load .env so settings are available even when running via Streamlit
try:
    load_dotenv()
except Exception:
    pass


BASE_DIR = os.path.dirname(os.path.dirname(__file__))
DB_PATH = os.path.join(BASE_DIR, "data", "clinic.db")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")

# All "today" / "this month" boundaries are computed in this civil time zone
CLINIC_TIME_ZONE = os.getenv("CLINIC_TIME_ZONE", "Asia/Manila")

# Stock classification thresholds
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "30"))
STABLE_STOCK_THRESHOLD = int(os.getenv("STABLE_STOCK_THRESHOLD", "100"))

# Trailing window used for the daily-average demand (90 or 180 in practice)
FORECAST_LOOKBACK_DAYS = int(os.getenv("FORECAST_LOOKBACK_DAYS", "90"))
RESTOCK_HORIZON_MONTHS = int(os.getenv("RESTOCK_HORIZON_MONTHS", "12"))

ALERT_PREVIEW_LIMIT = int(os.getenv("ALERT_PREVIEW_LIMIT", "5"))
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "15"))

DECREMENT_MAX_RETRIES = int(os.getenv("DECREMENT_MAX_RETRIES", "3"))

# "reject": a short dispense aborts the whole visit completion.
# "partial": whatever stock exists is dispensed and the shortfall is reported.
INSUFFICIENT_STOCK_POLICY = os.getenv("INSUFFICIENT_STOCK_POLICY", "reject").strip().lower()

REQUIRED_VITALS = tuple(
    v.strip()
    for v in os.getenv("REQUIRED_VITALS", "blood_pressure,temperature_c").split(",")
    if v.strip()
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logging(level: str | None = None):
    """Configure root logging once for the Streamlit app and scripts."""
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
