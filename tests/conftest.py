"""
Global test fixtures for pytest.

Every test gets a fresh in-memory SQLite database with all tables created,
plus small factories for patients, staff and stock lots.
"""
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.auth import hash_password
from core.database import Base, init_db
from core.events import bus
from models.patient import Patient
from models.user import User
from services import inventory_service

# Fixed "today" for stock tests so expiry filters are deterministic
TODAY = date(2024, 12, 1)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    """Session bound to the in-memory database."""
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def other_db(engine):
    """A second session on the same database, standing in for another terminal."""
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def events_seen():
    """Collect every change published on the bus during the test."""
    seen = []
    unsubscribe = bus.subscribe(seen.append)
    yield seen
    unsubscribe()


@pytest.fixture
def make_patient(db):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = {
            "family_number": f"{counter['n']:03d}",
            "surname": "Dela Cruz",
            "first_name": f"Juan{chr(64 + counter['n'])}",
            "sex": "MALE",
            "birthdate": date(1990, 5, 17),
            "age": 34,
            "emergency_contact_name": "Maria Dela Cruz",
            "emergency_relation": "Mother",
            "emergency_contact_number": "09171234567",
        }
        fields.update(overrides)
        patient = Patient(**fields)
        db.add(patient)
        db.commit()
        return patient

    return _make


@pytest.fixture
def doctor(db):
    user = User(username="doc1", role="doctor", full_name="Dr. Santos", password_hash=hash_password("pass123"))
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def make_lot(db):
    def _make(classification, medicine_name, quantity, expiration_date, dosage_form="Tablet", today=TODAY):
        return inventory_service.add_lot(
            db, classification, medicine_name, dosage_form, quantity, expiration_date, today=today
        )

    return _make
