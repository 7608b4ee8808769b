import streamlit as st

from core.config import POLL_INTERVAL_SECONDS
from core.events import bus


# (label, page, roles allowed)
STAFF_MENU = [
    ("Dashboard", "pages/s_dashboard.py", {"bhw", "nurse", "doctor", "admin"}),
    ("Register Patient", "pages/b_patient_registration.py", {"bhw", "nurse", "admin"}),
    ("Queue", "pages/s_queue_list.py", {"bhw", "nurse", "doctor", "admin"}),
    ("Queue Chart", "pages/d_queue_chart.py", {"doctor", "admin"}),
    ("Patient Records", "pages/s_patient_records.py", {"bhw", "nurse", "doctor", "admin"}),
    ("Medicine Inventory", "pages/n_inventory.py", {"nurse", "doctor", "admin"}),
    ("Day History", "pages/a_day_history.py", {"nurse", "admin"}),
    ("Data Analytics", "pages/a_data_analytics.py", {"doctor", "admin"}),
]


# -----------------------------
# Sidebar helpers
# -----------------------------
def hide_default_sidebar_nav():
    """Hide Streamlit's default multi-page navigation for a cleaner custom menu."""
    st.markdown(
        """
        <style>
        /* Hide the auto-generated Pages section */
        [data-testid="stSidebarNav"] { display: none; }
        </style>
        """,
        unsafe_allow_html=True,
    )


def hide_sidebar_completely():
    """Completely hide Streamlit's sidebar and the toggle control.

    Used on the login page where navigation should not be visible.
    """
    st.markdown(
        """
        <style>
        [data-testid="stSidebar"] { display: none !important; }
        [data-testid="collapsedControl"] { display: none !important; }
        </style>
        """,
        unsafe_allow_html=True,
    )


def render_staff_sidebar():
    """Render the menu entries the logged-in role may open."""
    hide_default_sidebar_nav()
    role = (st.session_state.get("role") or "").lower()
    user = st.session_state.get("user")
    with st.sidebar:
        st.markdown(f"### {role.upper() or 'Staff'} Menu")
        if user is not None:
            st.caption(getattr(user, "full_name", None) or getattr(user, "username", ""))
        for label, page, roles in STAFF_MENU:
            if role in roles and st.button(label, use_container_width=True, key=f"nav_{page}"):
                st.switch_page(page)
        st.divider()
        if st.button("Logout", use_container_width=True):
            from core.session_manager import logout
            logout()


# -----------------------------
# Live refresh
# -----------------------------
def changed_since_last_render(key: str) -> bool:
    """True when the change bus moved since this widget last rendered."""
    seen = st.session_state.get(f"_bus_seq_{key}")
    current = bus.sequence
    st.session_state[f"_bus_seq_{key}"] = current
    return seen is None or seen != current


def live_fragment(func):
    """Re-run a page section every POLL_INTERVAL_SECONDS."""
    return st.fragment(run_every=POLL_INTERVAL_SECONDS)(func)
