import pandas as pd
import streamlit as st

from core.database import get_db_context
from core.helpers import render_staff_sidebar
from core.session_manager import require_role
from core.time_utils import as_utc, clinic_today, clinic_tz
from services import transaction_service, visit_service

# Page config is set globally in app.py

require_role("nurse", "admin")
render_staff_sidebar()

st.title("Day History")

day = st.date_input("Day", value=clinic_today(), max_value=clinic_today())

with get_db_context() as db:
    visits = visit_service.day_history(db, day)
    completed = pd.DataFrame(
        [
            {
                "Completed": as_utc(v.completed_at).astimezone(clinic_tz()).strftime("%H:%M") if v.completed_at else "",
                "Patient": v.patient.full_name if v.patient else "—",
                "Family": v.patient.family_number if v.patient else "—",
                "Doctor": v.doctor_full_name or "—",
                "Assessment": v.doctor_assessment,
            }
            for v in visits
        ]
    )
    dispensed = pd.DataFrame(transaction_service.dispensed_on_day(db, day))

st.subheader(f"Completed check-ups ({len(completed)})")
if completed.empty:
    st.info("No completed visits on this day.")
else:
    st.dataframe(completed, use_container_width=True, hide_index=True)

st.subheader("Medicines dispensed")
if dispensed.empty:
    st.info("No medicines dispensed on this day.")
else:
    st.dataframe(
        dispensed[["created_at", "patient_name", "family_number", "medicine_name", "dosage_form", "quantity", "note"]],
        use_container_width=True,
        hide_index=True,
    )
    st.metric("Units dispensed", int(dispensed["quantity"].sum()))
