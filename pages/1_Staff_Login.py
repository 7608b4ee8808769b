import streamlit as st

from core.database import get_db_context
from core.helpers import hide_sidebar_completely
from core.session_manager import clear_session, init_session_state, login
from models.user import STAFF_ROLES
from services.user_service import authenticate_user


def main():
    st.set_page_config(page_title="Staff Login", page_icon="🩺", initial_sidebar_state="collapsed")
    hide_sidebar_completely()

    # Ensure session keys exist
    init_session_state()

    # Clear any previous login when entering this page
    clear_session()

    st.title("Staff Login")
    st.write("Please enter your credentials to continue.")

    with st.form("staff_login_form"):
        role = st.selectbox("Role", STAFF_ROLES, format_func=lambda r: r.upper() if r == "bhw" else r.title())
        username = st.text_input("Username")
        password = st.text_input("Password", type="password")
        submitted = st.form_submit_button("Login")

    if submitted:
        with get_db_context() as db:
            user = authenticate_user(db, username, password, role=role)

        if user:
            login(user)
            st.success("Login successful! Redirecting...")
            st.query_params.clear()
            st.switch_page("pages/s_dashboard.py")
        else:
            st.error("Invalid credentials. Try again.")


if __name__ == "__main__":
    main()
