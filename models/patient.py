# models/patient.py

from sqlalchemy import Column, Integer, String, Date, Boolean, DateTime
from core.database import Base
from core.time_utils import now_utc


class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)

    # Household grouping; every member of a family shares the surname
    family_number = Column(String, index=True, nullable=False)  # e.g. 004

    # Demographics
    surname = Column(String, nullable=False)
    first_name = Column(String, nullable=False)
    middle_name = Column(String, nullable=True)
    sex = Column(String, nullable=False)
    birthdate = Column(Date, nullable=True)
    age = Column(Integer, nullable=True)

    # Contact / emergency info
    contact_number = Column(String, nullable=True)
    emergency_contact_name = Column(String, nullable=True)
    emergency_relation = Column(String, nullable=True)
    emergency_contact_number = Column(String, nullable=True)

    # Denormalized "is waiting in the queue" flag (cleared on completion/cancel)
    queued = Column(Boolean, default=False, nullable=False)
    queued_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)
    created_by = Column(Integer, nullable=True)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.middle_name, self.surname) if p)

    def __repr__(self):
        return f"<Patient {self.family_number} - {self.full_name}>"
