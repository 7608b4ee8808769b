# models/inventory.py

from sqlalchemy import Column, Integer, String, Date, DateTime, ForeignKey, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import relationship

from core.database import Base, folded_from
from core.time_utils import now_utc


class MedicineCatalog(Base):
    """One row per medicine line; the stable key lots and transactions point at."""

    __tablename__ = "medicine_catalog"
    __table_args__ = (
        UniqueConstraint("classification_key", "name_key", name="uq_catalog_medicine"),
    )

    id = Column(Integer, primary_key=True, index=True)

    classification = Column(String, nullable=False)
    medicine_name = Column(String, nullable=False)
    dosage_form = Column(String, nullable=True)

    # Case/whitespace-folded copies used for matching
    classification_key = Column(String, nullable=False, index=True)
    name_key = Column(String, nullable=False, index=True)

    lots = relationship("InventoryLot", back_populates="medicine")

    def __repr__(self):
        return f"<Medicine {self.classification}/{self.medicine_name}>"


class InventoryLot(Base):
    __tablename__ = "inventory_lots"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_lot_quantity_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)

    medicine_id = Column(Integer, ForeignKey("medicine_catalog.id"), nullable=True, index=True)

    classification = Column(String, nullable=False)
    medicine_name = Column(String, nullable=False)
    dosage_form = Column(String, nullable=True)

    # Folded copies of the names above, filled in on insert
    classification_key = Column(String, nullable=False, index=True, default=folded_from("classification"))
    name_key = Column(String, nullable=False, index=True, default=folded_from("medicine_name"))

    quantity = Column(Integer, nullable=False, default=0)
    expiration_date = Column(Date, nullable=True, index=True)

    # Bumped on every quantity change; decrements compare-and-swap on it
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)

    medicine = relationship("MedicineCatalog", back_populates="lots")

    def __repr__(self):
        return f"<Lot {self.id} {self.medicine_name} x{self.quantity} exp {self.expiration_date}>"
