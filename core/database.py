import os
import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker, declarative_base
from sqlalchemy.orm.exc import StaleDataError

from core.config import DATABASE_URL, DB_PATH
from core.errors import ConflictError, StorageError
from core.events import ChangeEvent, bus
from core.validators import match_key

logger = logging.getLogger(__name__)


def _connect_args(url: str) -> dict:
    # Streamlit reruns pages on different threads
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


# Create engine
engine = create_engine(DATABASE_URL, connect_args=_connect_args(DATABASE_URL))

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for all models
Base = declarative_base()


def folded_from(column_name: str):
    """Column default: the match key of another column in the same INSERT."""
    def _default(context):
        return match_key(context.get_current_parameters().get(column_name))

    return _default


def init_db(bind=None):
    """Create every table registered on Base."""
    import models  # noqa: F401  (registers the mappers)

    if bind is None:
        os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)
    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def get_db_context():
    """
    Context manager for database sessions.
    Automatically closes session when done.

    Usage:
        with get_db_context() as db:
            result = db.query(Model).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# -----------------------------
# Unit of work
# -----------------------------
@contextmanager
def atomic(db: Session):
    """
    Run a block as one database transaction.

    Commits when the outermost block exits cleanly and rolls back on any
    exception. Nested blocks join the outer transaction, so a ledger call
    made inside a visit completion commits or rolls back with it.
    """
    depth = db.info.get("atomic_depth", 0)
    db.info["atomic_depth"] = depth + 1
    if depth:
        try:
            yield db
        finally:
            db.info["atomic_depth"] = depth
        return

    try:
        yield db
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConflictError("The record was changed by someone else. Reload and try again.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Database error; transaction rolled back")
        raise StorageError() from exc
    except BaseException:
        db.rollback()
        raise
    finally:
        db.info["atomic_depth"] = 0


def queue_change(db: Session, entity: str, entity_id: int, version: int, action: str, **payload):
    """Stage a change notification; it is published only if the session commits."""
    db.info.setdefault("pending_events", []).append(
        ChangeEvent(entity=entity, entity_id=entity_id, version=version or 0, action=action, payload=payload)
    )


@event.listens_for(Session, "after_commit")
def _publish_pending(session):
    pending = session.info.pop("pending_events", [])
    for change in pending:
        bus.publish(change)


@event.listens_for(Session, "after_rollback")
def _discard_pending(session):
    dropped = session.info.pop("pending_events", [])
    if dropped:
        logger.debug("Discarded %d unpublished change(s) after rollback", len(dropped))
