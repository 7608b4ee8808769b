from .patient import Patient
from .visit import VisitRecord, VisitMedicine
from .inventory import MedicineCatalog, InventoryLot
from .transaction import DispenseTransaction
from .user import User

__all__ = [
    "Patient",
    "VisitRecord",
    "VisitMedicine",
    "MedicineCatalog",
    "InventoryLot",
    "DispenseTransaction",
    "User",
]
