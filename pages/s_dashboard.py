import streamlit as st

from core.database import get_db_context
from core.helpers import changed_since_last_render, live_fragment, render_staff_sidebar
from core.session_manager import require_role
from core.time_utils import clinic_today
from services import alert_service, inventory_service, transaction_service, visit_service

# Page config is set globally in app.py

require_role("bhw", "nurse", "doctor", "admin")
render_staff_sidebar()

st.title("Dashboard")
st.caption(clinic_today().strftime("%A, %B %d, %Y"))


def load_summary():
    today = clinic_today()
    with get_db_context() as db:
        alerts = alert_service.evaluate_alerts(db, today=today)
        return {
            "queued_today": visit_service.queued_today_count(db, today),
            "waiting": len(visit_service.list_queued(db)),
            "totals": transaction_service.lifetime_totals(db, today),
            "alerts": alerts.items,
            "preview": alerts.preview,
            "classes": inventory_service.classifications(db),
        }


@live_fragment
def summary_section():
    if changed_since_last_render("dashboard") or "dashboard_summary" not in st.session_state:
        st.session_state["dashboard_summary"] = load_summary()
    data = st.session_state["dashboard_summary"]

    colA, colB, colC, colD = st.columns(4)
    colA.metric("Total Check Up (today)", data["queued_today"])
    colB.metric("Waiting in queue", data["waiting"])
    colC.metric("Medicine on stock", data["totals"]["stock"])
    colD.metric("Distributed (all time)", data["totals"]["distributed"])

    st.subheader("Stock alerts")
    if not data["alerts"]:
        st.success("All medicines are above the low-stock threshold.")
    for alert in data["preview"]:
        if alert.level == alert_service.OUT:
            st.error(f"**{alert.medicine_name}** is out of stock")
        else:
            st.warning(f"**{alert.medicine_name}** is low ({alert.quantity} left)")
    if len(data["alerts"]) > len(data["preview"]):
        with st.expander(f"Show all {len(data['alerts'])} alerts"):
            st.table([{"Medicine": a.medicine_name, "Qty": a.quantity, "Level": a.level} for a in data["alerts"]])


summary_section()

st.subheader("Inventory overview")
classes = st.session_state.get("dashboard_summary", {}).get("classes", [])
if classes:
    chosen = st.selectbox("Classification", classes)
    with get_db_context() as db:
        overview = alert_service.class_overview(db, chosen)
    if overview:
        st.dataframe(overview, use_container_width=True, hide_index=True)
    else:
        st.info("No medicines in this classification.")
else:
    st.info("No medicines in the catalog yet.")
