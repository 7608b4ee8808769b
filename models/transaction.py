# models/transaction.py

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, CheckConstraint

from core.database import Base, folded_from
from core.time_utils import now_utc


IN = "in"
OUT = "out"
DIRECTIONS = (IN, OUT)


class DispenseTransaction(Base):
    """Append-only stock movement. Rows are never updated or deleted."""

    __tablename__ = "medicine_transactions"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_transaction_quantity_positive"),
        CheckConstraint("direction IN ('in', 'out')", name="ck_transaction_direction"),
    )

    id = Column(Integer, primary_key=True, index=True)

    direction = Column(String, nullable=False, index=True)
    medicine_id = Column(Integer, ForeignKey("medicine_catalog.id"), nullable=True, index=True)
    classification = Column(String, nullable=False)
    medicine_name = Column(String, nullable=False, index=True)
    dosage_form = Column(String, nullable=True)

    # Folded copies used for case-insensitive filtering and grouping
    classification_key = Column(String, nullable=False, index=True, default=folded_from("classification"))
    name_key = Column(String, nullable=False, index=True, default=folded_from("medicine_name"))
    form_key = Column(String, nullable=False, default=folded_from("dosage_form"))

    quantity = Column(Integer, nullable=False)

    # Optional links
    visit_record_id = Column(Integer, ForeignKey("visit_records.id"), nullable=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    staff_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False, index=True)
    note = Column(Text, nullable=True)

    def __repr__(self):
        return f"<Txn {self.id} {self.direction} {self.medicine_name} x{self.quantity}>"
