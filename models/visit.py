# models/visit.py

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, ForeignKey
from sqlalchemy import Text
from sqlalchemy.orm import relationship

from core.database import Base
from core.time_utils import now_utc


QUEUED = "queued"
COMPLETED = "completed"
CANCELLED = "cancelled"

VISIT_STATUSES = (QUEUED, COMPLETED, CANCELLED)
TERMINAL_STATUSES = (COMPLETED, CANCELLED)


class VisitRecord(Base):
    __tablename__ = "visit_records"

    id = Column(Integer, primary_key=True, index=True)

    # Link to patient
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)

    # Workflow status; queued -> completed | cancelled
    status = Column(String, default=QUEUED, index=True)
    # Older rows only carry this boolean; both are honored when listing the queue
    queued = Column(Boolean, default=True, nullable=False)
    version = Column(Integer, default=1, nullable=False)

    # Vitals taken at intake
    height_cm = Column(Float, nullable=True)
    weight_kg = Column(Float, nullable=True)
    blood_pressure = Column(String, nullable=True)  # "120/80"
    temperature_c = Column(Float, nullable=True)
    chief_complaint = Column(Text, nullable=True)

    # Doctor inputs
    doctor_assessment = Column(Text, nullable=True)
    doctor_management = Column(Text, nullable=True)
    doctor_notes = Column(Text, nullable=True)
    doctor_id = Column(Integer, nullable=True)
    doctor_full_name = Column(String, nullable=True)

    # Key of the completion attempt that succeeded (retries with it are no-ops)
    completion_key = Column(String, nullable=True, unique=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)
    queued_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # ORM relationships
    patient = relationship("Patient", backref="visits")
    medicines = relationship("VisitMedicine", back_populates="visit", order_by="VisitMedicine.id")

    @property
    def is_queued(self) -> bool:
        if self.status == QUEUED:
            return True
        return bool(self.queued) and self.status not in TERMINAL_STATUSES

    def __repr__(self):
        return f"<VisitRecord {self.id} ({self.status}) for Patient {self.patient_id}>"


class VisitMedicine(Base):
    """Medicines recorded on a completed chart.

    `distributed` items were handed out from clinic stock; `prescribed`
    items are for the patient to buy and never touch inventory.
    """

    __tablename__ = "visit_medicines"

    id = Column(Integer, primary_key=True)
    visit_record_id = Column(Integer, ForeignKey("visit_records.id"), nullable=False, index=True)
    kind = Column(String, nullable=False)  # distributed | prescribed
    classification = Column(String, nullable=False)
    medicine_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    # What actually left the shelf (may be lower under partial fulfilment)
    quantity_dispensed = Column(Integer, nullable=True)

    visit = relationship("VisitRecord", back_populates="medicines")
