from datetime import date

import streamlit as st

from core.database import get_db_context
from core.errors import ClinicError
from core.helpers import render_staff_sidebar
from core.session_manager import get_current_user, require_role, show_error
from core.time_utils import clinic_today
from services import patient_service

# Page config is set globally in app.py

require_role("bhw", "nurse", "admin")
render_staff_sidebar()

st.title("Register New Patient")

# Step 1: look for an existing record before creating a duplicate
st.subheader("Step 1: Check if Patient Exists")
search_name = st.text_input("Search name or family number:", placeholder="Type to search...")

if search_name.strip():
    with get_db_context() as db:
        matches = patient_service.list_patients(db, search_name)[:10]
    if matches:
        st.warning(f"Found {len(matches)} existing patient(s):")
        for p in matches:
            st.write(f"**{p.full_name}** - Family {p.family_number}, Age: {p.age}, Sex: {p.sex}")
    else:
        st.success("No existing patients found. You can register as new.")

st.write("---")

st.subheader("Step 2: Register New Patient")

with get_db_context() as db:
    suggested_family = patient_service.next_family_number(db)

with st.form("patient_form"):
    c1, c2 = st.columns(2)
    with c1:
        family_number = st.text_input("Family Number", value=suggested_family)
        surname = st.text_input("Surname")
        first_name = st.text_input("First Name")
        middle_name = st.text_input("Middle Name (optional)")
        sex = st.selectbox("Sex", patient_service.SEXES)
        birthdate = st.date_input("Birthdate", value=None, min_value=date(1900, 1, 1), max_value=clinic_today())
        contact = st.text_input("Contact Number (+63, optional)", max_chars=10, placeholder="9XXXXXXXXX")
    with c2:
        emergency_name = st.text_input("Emergency Contact Person")
        emergency_relation = st.text_input("Emergency Relation")
        emergency_number = st.text_input("Emergency Contact Number (+63)", max_chars=10, placeholder="9XXXXXXXXX")
        st.markdown("**Intake vitals**")
        blood_pressure = st.text_input("Blood Pressure", placeholder="120/80")
        temperature = st.text_input("Temperature (°C)")
        height = st.text_input("Height (cm)")
        weight = st.text_input("Weight (kg)")
    chief_complaint = st.text_area("Chief Complaint")
    proceed = st.checkbox("Proceed to queue", value=True)
    submitted = st.form_submit_button("Save Patient")

if submitted:
    user = get_current_user()
    try:
        with get_db_context() as db:
            patient = patient_service.register_patient(
                db,
                family_number=family_number,
                surname=surname,
                first_name=first_name,
                middle_name=middle_name,
                sex=sex,
                birthdate=birthdate,
                contact_number=contact,
                emergency_contact_name=emergency_name,
                emergency_relation=emergency_relation,
                emergency_contact_number=emergency_number,
                proceed_to_queue=proceed,
                vitals={
                    "blood_pressure": blood_pressure,
                    "temperature_c": temperature,
                    "height_cm": height,
                    "weight_kg": weight,
                },
                chief_complaint=chief_complaint,
                staff_id=getattr(user, "id", None),
            )
            name = patient.full_name
        st.success(f"Patient saved successfully: {name}" + (" (added to queue)" if proceed else ""))
    except ClinicError as exc:
        show_error(exc)
