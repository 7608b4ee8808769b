import streamlit as st

from core.database import get_db_context
from core.errors import ClinicError
from core.helpers import changed_since_last_render, live_fragment, render_staff_sidebar
from core.session_manager import get_current_user, require_role, show_error
from core.time_utils import time_since
from services import visit_service

# Page config is set globally in app.py

require_role("bhw", "nurse", "doctor", "admin")
render_staff_sidebar()

st.title("Patient Queue")
st.write("Waiting patients, first come first served.")

role = (st.session_state.get("role") or "").lower()


def load_queue():
    with get_db_context() as db:
        return [
            {
                "visit_id": v.id,
                "name": v.patient.full_name if v.patient else "—",
                "family_number": v.patient.family_number if v.patient else "—",
                "queued_at": v.queued_at or v.created_at,
                "blood_pressure": v.blood_pressure,
                "temperature_c": v.temperature_c,
                "chief_complaint": v.chief_complaint,
            }
            for v in visit_service.list_queued(db)
        ]


@live_fragment
def queue_section():
    if changed_since_last_render("queue") or "queue_rows" not in st.session_state:
        st.session_state["queue_rows"] = load_queue()
    rows = st.session_state["queue_rows"]

    if not rows:
        st.info("No patients waiting right now.")
        return

    for position, row in enumerate(rows, start=1):
        waited = int(time_since(row["queued_at"]).total_seconds() // 60)
        with st.container(border=True):
            st.write(f"### {position}. {row['name']} (Family {row['family_number']})")
            st.write(f"- Waiting: {waited} min")
            st.write(f"- BP: {row['blood_pressure'] or '—'}, Temp: {row['temperature_c'] or '—'} °C")
            if row["chief_complaint"]:
                st.write(f"- Chief complaint: {row['chief_complaint']}")

            c1, c2 = st.columns(2)
            if role in {"doctor", "admin"} and c1.button("Open Chart", key=f"open_{row['visit_id']}"):
                st.session_state["open_visit_id"] = row["visit_id"]
                st.switch_page("pages/d_queue_chart.py")
            if role in {"nurse", "admin"} and c2.button("Cancel", key=f"cancel_{row['visit_id']}"):
                user = get_current_user()
                try:
                    with get_db_context() as db:
                        visit_service.cancel_visit(db, row["visit_id"], staff_id=getattr(user, "id", None))
                    st.success("Visit cancelled.")
                    st.rerun()
                except ClinicError as exc:
                    show_error(exc)


queue_section()
