import streamlit as st

from core.errors import ClinicError, StorageError


def init_session_state():
    """Ensure required session keys exist."""
    if "user" not in st.session_state:
        st.session_state.user = None
    if "role" not in st.session_state:
        st.session_state.role = None


def login(user):
    """Persist logged-in user object and role."""
    st.session_state.user = user
    st.session_state.role = user.role


def logout():
    """Clear session and redirect to main app page."""
    st.session_state.pop("user", None)
    st.session_state.pop("role", None)

    try:
        st.query_params.clear()
    except Exception:
        pass

    st.switch_page("app.py")


def clear_session():
    """Clear session without redirect."""
    st.session_state.pop("user", None)
    st.session_state.pop("role", None)


def get_current_user():
    """Return the currently logged-in user from Streamlit session state."""
    return getattr(st.session_state, "user", None)


def require_role(*roles: str):
    """Restrict page to the given roles; send everyone else to app.py."""
    init_session_state()

    if st.session_state.user is None:
        st.warning("Please log in to access this page.")
        st.switch_page("app.py")

    allowed = {r.strip().lower() for r in roles}
    current = (st.session_state.role or "").strip().lower()
    if current not in allowed:
        st.error(f" Access denied. This page requires one of: {', '.join(sorted(allowed))}.")
        st.switch_page("app.py")


def show_error(exc: ClinicError):
    """Render a service error; storage failures get a generic message."""
    if isinstance(exc, StorageError):
        st.error(StorageError().user_message)
    else:
        st.error(exc.user_message)
