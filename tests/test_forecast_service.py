"""
Forecast engine tests.

Test coverage:
1. Observed demand and trailing daily average from `out` entries
2. Rounding of the forecast and the stock classification order
3. Month-by-month restock projection
4. Report recomputation is stable over a closed window
5. Monthly buckets and the year-over-year forecast
"""
from datetime import date, timedelta

import pytest

from core.errors import ValidationError
from core.time_utils import clinic_midnight_utc
from models.transaction import IN, OUT
from services import forecast_service, transaction_service
from services.forecast_service import StockThresholds


def at(day: date, hours: int = 9):
    """UTC timestamp `hours` after clinic midnight on `day`."""
    return clinic_midnight_utc(day) + timedelta(hours=hours)


@pytest.fixture
def amoxicillin_history(db):
    transaction_service.record(db, OUT, "Antibiotics", "Amoxicillin", "Tablet", 5, created_at=at(date(2024, 11, 10)))
    transaction_service.record(db, OUT, "Antibiotics", "Amoxicillin", "Tablet", 7, created_at=at(date(2024, 11, 11)))
    # Intake never counts as demand
    transaction_service.record(db, IN, "Antibiotics", "Amoxicillin", "Tablet", 100, created_at=at(date(2024, 11, 10)))
    db.commit()


class TestDemand:
    def test_observed_demand_over_two_day_window(self, db, amoxicillin_history):
        totals = forecast_service.observed_demand(
            db, clinic_midnight_utc(date(2024, 11, 10)), clinic_midnight_utc(date(2024, 11, 12))
        )
        assert totals == {"Amoxicillin": 12}

    def test_observed_demand_by_dosage_form(self, db, amoxicillin_history):
        transaction_service.record(db, OUT, "Antibiotics", "Amoxicillin", "Syrup", 2, created_at=at(date(2024, 11, 10)))
        db.commit()

        totals = forecast_service.observed_demand(
            db, clinic_midnight_utc(date(2024, 11, 1)), clinic_midnight_utc(date(2024, 12, 1)), by_dosage_form=True
        )
        assert totals == {("Amoxicillin", "Tablet"): 12, ("Amoxicillin", "Syrup"): 2}

    def test_daily_average_and_forecast(self, db, amoxicillin_history):
        avg = forecast_service.daily_average(db, "Amoxicillin", as_of=date(2024, 11, 30), lookback_days=90)

        assert avg == pytest.approx(12 / 90)
        assert forecast_service.forecast_demand(avg, 30) == 4

    def test_daily_average_window_includes_as_of_day(self, db, amoxicillin_history):
        assert forecast_service.daily_average(db, "Amoxicillin", date(2024, 11, 11), 1) == 7
        assert forecast_service.daily_average(db, "Amoxicillin", date(2024, 11, 9), 90) == 0

    def test_lookback_of_180_days(self, db, amoxicillin_history):
        avg = forecast_service.daily_average(db, "amoxicillin", date(2024, 11, 30), lookback_days=180)
        assert avg == pytest.approx(12 / 180)

    def test_lookback_must_be_positive(self, db):
        with pytest.raises(ValidationError):
            forecast_service.daily_average(db, "Amoxicillin", date(2024, 11, 30), lookback_days=0)

    def test_forecast_rounds_half_up(self):
        assert forecast_service.forecast_demand(0.25, 2) == 1
        assert forecast_service.forecast_demand(0.25, 1) == 0
        assert forecast_service.forecast_demand(0, 30) == 0


class TestClassification:
    def test_low_stock_takes_precedence_over_forecast(self):
        assert forecast_service.classify_stock(25, 10) == forecast_service.LOW_STOCK

    @pytest.mark.parametrize(
        "stock, forecast, expected",
        [
            (150, 500, forecast_service.STABLE),
            (101, 0, forecast_service.STABLE),
            (100, 0, forecast_service.MONITOR),
            (30, 0, forecast_service.LOW_STOCK),
            (50, 60, forecast_service.REORDER_SOON),
            (50, 50, forecast_service.REORDER_SOON),
            (50, 10, forecast_service.MONITOR),
        ],
    )
    def test_classification_order(self, stock, forecast, expected):
        assert forecast_service.classify_stock(stock, forecast) == expected

    def test_thresholds_are_configurable(self):
        thresholds = StockThresholds(low=5, stable=20)
        assert forecast_service.classify_stock(25, 0, thresholds) == forecast_service.STABLE
        assert forecast_service.classify_stock(10, 0, thresholds) == forecast_service.MONITOR


class TestRestockProjection:
    def test_first_month_that_runs_out(self):
        # 100 - 62 (Dec) = 38, 38 - 62 (Jan) < 0
        assert forecast_service.restock_projection(100, 2, date(2024, 12, 10)) == date(2025, 1, 1)

    def test_empty_stock_means_current_month(self):
        assert forecast_service.restock_projection(0, 1, date(2024, 12, 10)) == date(2024, 12, 1)

    def test_no_demand_means_no_restock(self):
        assert forecast_service.restock_projection(10, 0, date(2024, 12, 10)) is None

    def test_stock_lasting_past_horizon(self):
        assert forecast_service.restock_projection(10_000, 1, date(2024, 12, 10)) is None


class TestForecastReport:
    def test_report_row(self, db, make_lot, amoxicillin_history):
        make_lot("Antibiotics", "Amoxicillin", 25, date(2025, 6, 1), today=date(2024, 11, 1))

        report = forecast_service.forecast_report(db, as_of=date(2024, 11, 30), next_period_days=30,
                                                  lookback_days=90)

        assert len(report) == 1
        row = report[0]
        assert row.on_hand == 25
        assert row.observed_month_to_date == 12
        assert row.daily_average == pytest.approx(12 / 90)
        assert row.forecast == 4
        assert row.status == forecast_service.LOW_STOCK
        assert row.restock_before == date(2025, 5, 1)

    def test_recomputation_is_identical(self, db, make_lot, amoxicillin_history):
        make_lot("Antibiotics", "Amoxicillin", 25, date(2025, 6, 1), today=date(2024, 11, 1))

        first = forecast_service.forecast_report(db, as_of=date(2024, 11, 30))
        second = forecast_service.forecast_report(db, as_of=date(2024, 11, 30))

        assert first == second

    def test_frame_has_one_row_per_medicine(self, db, make_lot):
        make_lot("Antibiotics", "Amoxicillin", 25, date(2025, 6, 1))
        make_lot("Analgesic", "Paracetamol", 200, date(2025, 6, 1))

        frame = forecast_service.forecast_frame(forecast_service.forecast_report(db, as_of=date(2024, 12, 1)))

        assert list(frame["Medicine"]) == ["Paracetamol", "Amoxicillin"]
        assert list(frame["Status"]) == [forecast_service.STABLE, forecast_service.LOW_STOCK]


class TestMonthlyAndYearly:
    def test_monthly_buckets_use_clinic_time_zone(self, db):
        # 16:30 UTC on Dec 31 is already Jan 1 in the clinic
        transaction_service.record(db, OUT, "Antibiotics", "Amoxicillin", "Tablet", 3,
                                   created_at=clinic_midnight_utc(date(2024, 1, 1)) + timedelta(minutes=30))
        transaction_service.record(db, OUT, "Antibiotics", "Amoxicillin", "Tablet", 4, created_at=at(date(2024, 1, 15)))
        transaction_service.record(db, OUT, "Antibiotics", "Amoxicillin", "Tablet", 6, created_at=at(date(2024, 3, 2)))
        transaction_service.record(db, OUT, "Antibiotics", "Amoxicillin", "Tablet", 50, created_at=at(date(2023, 6, 2)))
        db.commit()

        frame = forecast_service.monthly_demand(db, 2024)

        assert len(frame) == 1
        row = frame.iloc[0]
        assert row["Jan"] == 7
        assert row["Mar"] == 6
        assert row["Total"] == 13

    def test_display_year_is_latest_year_with_data(self, db):
        assert forecast_service.display_year(db, today=date(2024, 6, 1)) == 2024

        transaction_service.record(db, OUT, "Antibiotics", "Amoxicillin", "Tablet", 1, created_at=at(date(2022, 3, 1)))
        transaction_service.record(db, OUT, "Antibiotics", "Amoxicillin", "Tablet", 1, created_at=at(date(2023, 3, 1)))
        db.commit()

        assert forecast_service.display_year(db, today=date(2024, 6, 1)) == 2023

    def test_forecast_next_year_average_growth(self):
        growth, value = forecast_service.forecast_next_year({2021: 100, 2022: 120, 2023: 150}, 2024)
        assert growth == pytest.approx(22.5)
        assert value == 184

    def test_forecast_next_year_skips_zero_base_years(self):
        growth, value = forecast_service.forecast_next_year({2021: 0, 2022: 50, 2023: 100}, 2024)
        assert growth == pytest.approx(100.0)
        assert value == 200

    def test_forecast_next_year_with_short_history(self):
        assert forecast_service.forecast_next_year({2023: 80}, 2024) == (0.0, 80)
        assert forecast_service.forecast_next_year({}, 2024) == (0.0, 0)

    def test_yearly_demand_table(self, db, make_lot):
        make_lot("Antibiotics", "Amoxicillin", 10, date(2025, 6, 1))
        make_lot("Analgesic", "Paracetamol", 10, date(2025, 6, 1))
        for year, qty in ((2021, 100), (2022, 120), (2023, 150)):
            transaction_service.record(db, OUT, "Antibiotics", "Amoxicillin", "Tablet", qty,
                                       created_at=at(date(year, 6, 1)))
        db.commit()

        frame = forecast_service.yearly_demand(db, today=date(2024, 6, 1))

        assert list(frame.columns[3:]) == ["2021", "2022", "2023", "2024F", "avg_growth_pct"]
        amox = frame[frame["medicine_name"] == "Amoxicillin"].iloc[0]
        assert [amox["2021"], amox["2022"], amox["2023"], amox["2024F"]] == [100, 120, 150, 184]
        para = frame[frame["medicine_name"] == "Paracetamol"].iloc[0]
        assert para["2024F"] == 0


class TestNameMatching:
    def test_accented_medicine_forecast(self, db, make_lot):
        make_lot("Vitamins", "Ácido Fólico", 50, date(2025, 6, 1), today=date(2024, 11, 1))
        transaction_service.record(db, OUT, "Vitamins", "Ácido Fólico", "Tablet", 9,
                                   created_at=at(date(2024, 11, 30)))
        db.commit()

        avg = forecast_service.daily_average(db, "ÁCIDO FÓLICO", date(2024, 11, 30), 90)
        report = forecast_service.forecast_report(db, as_of=date(2024, 11, 30))

        assert avg == pytest.approx(9 / 90)
        assert [(r.medicine_name, r.on_hand, r.observed_month_to_date) for r in report] == [
            ("Ácido Fólico", 50, 9)
        ]
        assert report[0].daily_average == pytest.approx(9 / 90)

    def test_observed_demand_merges_name_variants(self, db, make_lot):
        make_lot("Antibiotics", "Amoxicillin", 10, date(2025, 6, 1))
        transaction_service.record(db, OUT, "Antibiotics", "Amoxicillin", "Tablet", 2, created_at=at(date(2024, 11, 10)))
        transaction_service.record(db, OUT, "ANTIBIOTICS", "AMOXICILLIN ", "tablet", 3, created_at=at(date(2024, 11, 11)))
        db.commit()

        window = (clinic_midnight_utc(date(2024, 11, 1)), clinic_midnight_utc(date(2024, 12, 1)))

        assert forecast_service.observed_demand(db, *window) == {"Amoxicillin": 5}
        assert forecast_service.observed_demand(db, *window, by_dosage_form=True) == {("Amoxicillin", "Tablet"): 5}

    def test_monthly_demand_merges_name_variants(self, db, make_lot):
        make_lot("Antibiotics", "Amoxicillin", 10, date(2025, 6, 1))
        transaction_service.record(db, OUT, "Antibiotics", "Amoxicillin", "Tablet", 2, created_at=at(date(2024, 3, 10)))
        transaction_service.record(db, OUT, "antibiotics", "amoxicillin", "TABLET", 3, created_at=at(date(2024, 3, 11)))
        db.commit()

        frame = forecast_service.monthly_demand(db, 2024)

        assert len(frame) == 1
        assert frame.iloc[0]["medicine_name"] == "Amoxicillin"
        assert frame.iloc[0]["Mar"] == 5
