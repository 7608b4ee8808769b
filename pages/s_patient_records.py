import streamlit as st

from core.database import get_db_context
from core.helpers import render_staff_sidebar
from core.session_manager import require_role
from services import patient_service, transaction_service, visit_service

# Page config is set globally in app.py

require_role("bhw", "nurse", "doctor", "admin")
render_staff_sidebar()

st.title("Patient Records")

search = st.text_input("Search patient or family number:", placeholder="Type to search...")

with get_db_context() as db:
    patients = patient_service.list_patients(db, search)

    if not patients:
        st.info("No patients found.")
        st.stop()

    st.write(f"{len(patients)} patient(s)")
    for p in patients[:50]:
        status = "In queue" if p.queued else ""
        with st.expander(f"{p.full_name} · Family {p.family_number} {status}"):
            st.write(f"- Sex: {p.sex}, Age: {p.age}, Birthdate: {p.birthdate}")
            st.write(f"- Contact: {p.contact_number or '—'}")
            st.write(
                f"- Emergency: {p.emergency_contact_name} ({p.emergency_relation}) {p.emergency_contact_number}"
            )

            records = visit_service.past_records(db, p.id)
            if not records:
                st.caption("No past records.")
            for record in records:
                stamp = record.completed_at or record.cancelled_at or record.created_at
                st.markdown(f"**{stamp:%Y-%m-%d}** · {record.status} · {record.doctor_full_name or ''}")
                if record.doctor_notes:
                    st.text(record.doctor_notes)
                for txn in transaction_service.transactions_for_visit(db, record.id):
                    st.write(f"  - {txn.medicine_name} ({txn.dosage_form or '—'}) x{txn.quantity}")
                prescribed = [m for m in record.medicines if m.kind == visit_service.PRESCRIBED]
                if prescribed:
                    st.write("  Prescribed: " + ", ".join(f"{m.medicine_name} x{m.quantity}" for m in prescribed))
