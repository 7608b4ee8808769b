# core/setup_db.py

import logging

from core.config import setup_logging
from core.database import get_db_context, init_db
from services.user_service import ensure_default_users

logger = logging.getLogger(__name__)


def main():
    setup_logging()
    logger.info("Creating database tables...")

    # Create all SQLAlchemy tables
    init_db()

    # Insert demo users
    with get_db_context() as db:
        ensure_default_users(db)

    logger.info("Database initialized successfully.")


if __name__ == "__main__":
    main()
