import streamlit as st

from core.config import FORECAST_LOOKBACK_DAYS
from core.database import get_db_context
from core.helpers import render_staff_sidebar
from core.session_manager import require_role
from core.time_utils import clinic_today
from services import forecast_service, inventory_service

# Page config is set globally in app.py

require_role("doctor", "admin")
render_staff_sidebar()

st.title("Data Analytics")
today = clinic_today()

with get_db_context() as db:
    classes = inventory_service.classifications(db)

c1, c2 = st.columns(2)
classification = c1.selectbox("Classification", ["All"] + classes)
classification = None if classification == "All" else classification
with get_db_context() as db:
    names = sorted({m.medicine_name for m in inventory_service.list_catalog(db, classification)})
medicine = c2.selectbox("Medicine", ["All"] + names)
medicine = None if medicine == "All" else medicine

tab_forecast, tab_monthly, tab_yearly = st.tabs(["Forecast", "Monthly", "Yearly"])

with tab_forecast:
    period = st.number_input("Forecast period (days)", min_value=1, max_value=365, value=30)
    st.caption(f"Daily average over the last {FORECAST_LOOKBACK_DAYS} days.")
    with get_db_context() as db:
        report = forecast_service.forecast_report(db, today, int(period), classification=classification)
    frame = forecast_service.forecast_frame(report)
    if medicine:
        frame = frame[frame["Medicine"] == medicine]
    if frame.empty:
        st.info("No medicines to forecast.")
    else:
        st.dataframe(frame, use_container_width=True, hide_index=True)

with tab_monthly:
    with get_db_context() as db:
        year = forecast_service.display_year(db, classification, medicine, today=today)
        monthly = forecast_service.monthly_demand(db, year, classification, medicine)
    st.subheader(f"Units distributed per month, {year}")
    if monthly.empty:
        st.info("No dispensing recorded yet.")
    else:
        st.line_chart(monthly.set_index("medicine_name")[forecast_service.MONTH_LABELS].T)
        if st.checkbox("Show table", key="monthly_table"):
            st.dataframe(monthly, use_container_width=True, hide_index=True)

with tab_yearly:
    with get_db_context() as db:
        yearly = forecast_service.yearly_demand(db, today, classification, medicine)
    st.subheader("Last three years and current-year forecast")
    if yearly.empty:
        st.info("No dispensing recorded yet.")
    else:
        year_columns = [c for c in yearly.columns if c[:4].isdigit()]
        st.bar_chart(yearly.set_index("medicine_name")[year_columns].T)
        if st.checkbox("Show table", key="yearly_table"):
            st.dataframe(yearly, use_container_width=True, hide_index=True)
