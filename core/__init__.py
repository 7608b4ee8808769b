from .database import get_db_context, atomic, engine, SessionLocal, Base

# Streamlit helpers (session_manager, helpers) are imported directly by pages
# so the services stay importable without a running app.

__all__ = [
    "get_db_context",
    "atomic",
    "engine",
    "SessionLocal",
    "Base",
]
