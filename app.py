import logging

import streamlit as st

from core.config import setup_logging
from core.database import get_db_context, init_db
from core.session_manager import init_session_state, logout
from services.user_service import ensure_default_users

logger = logging.getLogger(__name__)


@st.cache_resource
def bootstrap():
    """Create tables and demo users once per server process."""
    setup_logging()
    init_db()
    with get_db_context() as db:
        ensure_default_users(db)
    logger.info("Clinic app ready")
    return True


def main():
    st.set_page_config(
        page_title="Clinic Queue & Pharmacy",
        page_icon="🏥",
        layout="wide",
        initial_sidebar_state="collapsed",
    )

    bootstrap()
    init_session_state()

    user = st.session_state.get("user")
    role = st.session_state.get("role")

    cols = st.columns([4, 2])
    with cols[0]:
        st.title("Clinic Queue & Pharmacy")
    with cols[1]:
        if user:
            st.info(f"Logged in as: **{user.username}** ({role})")
            if st.button("Log out"):
                logout()
                st.rerun()

    st.write("---")

    if user is None or role is None:
        # Hide sidebar & its toggle on the landing page
        st.markdown(
            """
            <style>
            [data-testid="stSidebar"] { display: none !important; }
            [data-testid="collapsedControl"] { display: none !important; }
            </style>
            """,
            unsafe_allow_html=True,
        )
        st.subheader("Staff sign-in")
        if st.button("Go to Login"):
            st.switch_page("pages/1_Staff_Login.py")
        return

    st.subheader("Quick navigation")
    if st.button("Go to Dashboard"):
        st.switch_page("pages/s_dashboard.py")
    if role in {"bhw", "nurse", "admin"} and st.button("Register a Patient"):
        st.switch_page("pages/b_patient_registration.py")
    if role in {"doctor", "admin"} and st.button("Open Queue Chart"):
        st.switch_page("pages/d_queue_chart.py")


if __name__ == "__main__":
    main()
