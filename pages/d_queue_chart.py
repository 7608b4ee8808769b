import uuid

import pandas as pd
import streamlit as st

from core.database import get_db_context
from core.errors import ClinicError, InsufficientStockError
from core.helpers import render_staff_sidebar
from core.session_manager import get_current_user, require_role, show_error
from services import inventory_service, visit_service

# Page config is set globally in app.py

require_role("doctor", "admin")
render_staff_sidebar()

st.title("Queue Chart")

with get_db_context() as db:
    queued = [(v.id, f"{v.patient.full_name} (Family {v.patient.family_number})") for v in visit_service.list_queued(db)]
    catalog = [(m.classification, m.medicine_name) for m in inventory_service.list_catalog(db)]

if not queued:
    st.info("No patients waiting right now.")
    st.stop()

ids = [vid for vid, _ in queued]
labels = dict(queued)
preselected = st.session_state.get("open_visit_id")
visit_id = st.selectbox(
    "Patient",
    ids,
    index=ids.index(preselected) if preselected in ids else 0,
    format_func=lambda vid: labels[vid],
)

# One key per chart opening; a resubmit after a lost response is answered from the stored result
key_name = f"completion_key_{visit_id}"
if key_name not in st.session_state:
    st.session_state[key_name] = uuid.uuid4().hex

with get_db_context() as db:
    visit = visit_service.get_visit(db, visit_id)
    patient = visit.patient
    history = visit_service.past_records(db, visit.patient_id)

    st.subheader(patient.full_name)
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Age", patient.age if patient.age is not None else "—")
    c2.metric("BP", visit.blood_pressure or "—")
    c3.metric("Temp (°C)", visit.temperature_c if visit.temperature_c is not None else "—")
    c4.metric("Weight (kg)", visit.weight_kg if visit.weight_kg is not None else "—")
    if visit.chief_complaint:
        st.write(f"**Chief complaint:** {visit.chief_complaint}")

    if history:
        with st.expander(f"Past records ({len(history)})"):
            for past in history:
                stamp = past.completed_at or past.cancelled_at or past.created_at
                st.markdown(f"**{stamp:%Y-%m-%d}** · {past.status}")
                if past.doctor_notes:
                    st.text(past.doctor_notes)

medicine_labels = [f"{cls} / {name}" for cls, name in catalog]
by_label = dict(zip(medicine_labels, catalog))

with st.form("chart_form"):
    assessment = st.text_area("Assessment / Diagnosis")
    management = st.text_area("Management")

    st.markdown("**Medicines distributed from clinic stock**")
    dispensed_rows = st.data_editor(
        pd.DataFrame([{"medicine": None, "quantity": 1}]),
        num_rows="dynamic",
        key=f"dispensed_{visit_id}",
        column_config={
            "medicine": st.column_config.SelectboxColumn("Medicine", options=medicine_labels),
            "quantity": st.column_config.NumberColumn("Qty", min_value=1, step=1),
        },
        use_container_width=True,
    )
    st.markdown("**Medicines prescribed (to buy)**")
    prescribed_rows = st.data_editor(
        pd.DataFrame([{"classification": "", "medicine_name": "", "quantity": 1}]),
        num_rows="dynamic",
        key=f"prescribed_{visit_id}",
        use_container_width=True,
    )
    partial = st.checkbox("Dispense what is available if stock runs short", value=False)
    submitted = st.form_submit_button("Complete Visit")

if submitted:
    dispensed = [
        {"classification": by_label[r["medicine"]][0], "medicine_name": by_label[r["medicine"]][1],
         "quantity": r["quantity"]}
        for r in dispensed_rows.to_dict("records") if pd.notna(r.get("medicine"))
    ]
    prescribed = [
        r for r in prescribed_rows.to_dict("records")
        if pd.notna(r.get("medicine_name")) and str(r["medicine_name"]).strip()
    ]
    try:
        with get_db_context() as db:
            result = visit_service.complete_visit(
                db,
                visit_id,
                assessment,
                management,
                dispensed=dispensed,
                prescribed=prescribed,
                staff=get_current_user(),
                idempotency_key=st.session_state[key_name],
                insufficient_stock=visit_service.PARTIAL if partial else visit_service.REJECT,
            )
        for name, requested, got in result.shortfalls:
            st.warning(f"{name}: dispensed {got} of {requested} (not enough stock).")
        st.success("Visit completed.")
        st.session_state.pop("open_visit_id", None)
        st.session_state.pop(key_name, None)
    except InsufficientStockError as exc:
        st.error(f"{exc.user_message} Nothing was saved.")
    except ClinicError as exc:
        show_error(exc)

if st.button("Back to Queue"):
    st.switch_page("pages/s_queue_list.py")
