import logging

from sqlalchemy.orm import Session

from core.auth import hash_password, verify_password
from core.database import atomic
from core.errors import ValidationError
from models.user import STAFF_ROLES, User

logger = logging.getLogger(__name__)


def authenticate_user(db: Session, username: str, password: str, role: str | None = None):
    """Return the staff user for valid credentials (and role, when given), else None."""
    user = db.query(User).filter(User.username == (username or "").strip()).first()
    if not user or not verify_password(password or "", user.password_hash):
        logger.info("Failed login for '%s'", username)
        return None

    required = (role or "").strip().lower()
    if required and (user.role or "").strip().lower() != required:
        logger.info("Login for '%s' rejected: role %s, page wants %s", username, user.role, required)
        return None
    return user


def create_user(db: Session, role: str, username: str, password: str, full_name: str | None = None) -> User:
    role = (role or "").strip().lower()
    if role not in STAFF_ROLES:
        raise ValidationError("role", f"Role must be one of {', '.join(STAFF_ROLES)}.")

    username = (username or "").strip()
    if not username:
        raise ValidationError("username", "Username cannot be empty.")
    if not password:
        raise ValidationError("password", "Password cannot be empty.")
    if db.query(User).filter(User.username == username).first():
        raise ValidationError("username", "Username already exists.")

    with atomic(db):
        user = User(username=username, role=role, password_hash=hash_password(password), full_name=full_name)
        db.add(user)
    return user


def ensure_default_users(db: Session):
    """
    Creates default demo users on fresh database.
    """
    # If any users already exist, skip
    if db.query(User).first():
        return

    with atomic(db):
        db.add_all([
            User(username="bhw1", role="bhw", full_name="Demo BHW", password_hash=hash_password("pass123")),
            User(username="nurse1", role="nurse", full_name="Demo Nurse", password_hash=hash_password("pass123")),
            User(username="doc1", role="doctor", full_name="Demo Doctor", password_hash=hash_password("pass123")),
            User(username="admin1", role="admin", full_name="Demo Admin", password_hash=hash_password("pass123")),
        ])
    logger.info("Default demo users created.")


def list_staff(db: Session, role: str | None = None):
    q = db.query(User)
    if role:
        q = q.filter(User.role == role)
    return q.order_by(User.username).all()
