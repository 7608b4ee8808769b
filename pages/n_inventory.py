import pandas as pd
import streamlit as st

from core.database import get_db_context
from core.errors import ClinicError
from core.helpers import changed_since_last_render, live_fragment, render_staff_sidebar
from core.session_manager import get_current_user, require_role, show_error
from core.time_utils import clinic_today
from services import inventory_service

# Page config is set globally in app.py

require_role("nurse", "doctor", "admin")
render_staff_sidebar()

st.title("Medicine Inventory")

role = (st.session_state.get("role") or "").lower()
can_edit = role in {"nurse", "admin"}
today = clinic_today()


def lot_rows(lots):
    return pd.DataFrame(
        [
            {
                "Lot code": inventory_service.make_lot_code(lot),
                "Classification": lot.classification,
                "Medicine": lot.medicine_name,
                "Form": lot.dosage_form,
                "Qty": lot.quantity,
                "Expires": lot.expiration_date,
                "Expired": bool(lot.expiration_date and lot.expiration_date < today),
            }
            for lot in lots
        ]
    )


tab_stock, tab_expiry, tab_manage = st.tabs(["Stock", "Expiry", "Add / Remove"])

with tab_stock:
    search = st.text_input("Search lots", placeholder="Name, class, form, lot code...")

    @live_fragment
    def stock_section():
        if changed_since_last_render("inventory") or "inventory_lots" not in st.session_state:
            with get_db_context() as db:
                st.session_state["inventory_lots"] = lot_rows(inventory_service.list_lots(db))
        frame = st.session_state["inventory_lots"]
        if search.strip() and not frame.empty:
            needle = search.strip().lower()
            mask = frame.astype(str).apply(lambda col: col.str.lower().str.contains(needle, regex=False)).any(axis=1)
            frame = frame[mask]
        if frame.empty:
            st.info("No stock lots found.")
        else:
            st.dataframe(frame, use_container_width=True, hide_index=True)

    stock_section()

with tab_expiry:
    c1, c2 = st.columns(2)
    year_choice = c1.selectbox("Year", ["ALL"] + [today.year + i for i in range(-1, 6)])
    month_choice = c2.selectbox("Month", ["ALL"] + list(range(1, 13)))
    with get_db_context() as db:
        if year_choice == "ALL":
            rows, note = inventory_service.expiring_lots(db)
        else:
            rows, note = inventory_service.expiring_lots(
                db, int(year_choice), None if month_choice == "ALL" else int(month_choice)
            )
        frame = lot_rows(rows)
    if note:
        st.info(note)
    if frame.empty:
        st.write("Nothing to show.")
    else:
        st.dataframe(frame, use_container_width=True, hide_index=True)

with tab_manage:
    if not can_edit:
        st.info("Only nurses and admins can change stock.")
    else:
        st.subheader("Add stock")
        with st.form("add_lot_form"):
            classification = st.text_input("Classification")
            medicine_name = st.text_input("Medicine name")
            dosage_form = st.text_input("Dosage form", placeholder="Tablet, Syrup, Capsule...")
            quantity = st.number_input("Quantity", min_value=1, step=1)
            expiry = st.date_input("Expiration date", value=None, min_value=today)
            add = st.form_submit_button("Add Stock")
        if add:
            try:
                with get_db_context() as db:
                    lot = inventory_service.add_lot(
                        db, classification, medicine_name, dosage_form, quantity, expiry,
                        staff_id=getattr(get_current_user(), "id", None),
                    )
                    code = inventory_service.make_lot_code(lot)
                st.success(f"Added lot {code}.")
            except ClinicError as exc:
                show_error(exc)

        st.subheader("Remove a lot")
        with st.form("remove_lot_form"):
            code = st.text_input("Lot code", placeholder="AMO-T2601-007")
            remove = st.form_submit_button("Remove Lot")
        if remove:
            try:
                with get_db_context() as db:
                    removed = inventory_service.remove_lot(
                        db, code, staff_id=getattr(get_current_user(), "id", None)
                    )
                st.success(f"Removed {removed['code']} ({removed['quantity_removed']} units).")
            except ClinicError as exc:
                show_error(exc)
