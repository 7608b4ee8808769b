"""
In-process change notification.

Units of work queue ChangeEvents while they run; core.database.atomic()
publishes them only after a successful commit. Consumers either subscribe
(push) or call replay(since) after a reconnect (at-least-once). Because a
change may be seen twice, consumers wrap their handler in IdempotentApplier,
which applies each (entity, entity_id) version at most once.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


# Entity names used across the services
PATIENT = "patient"
VISIT_RECORD = "visit_record"
INVENTORY_LOT = "inventory_lot"
DISPENSE_TRANSACTION = "dispense_transaction"
MEDICINE_CATALOG = "medicine_catalog"


@dataclass(frozen=True)
class ChangeEvent:
    entity: str
    entity_id: int
    version: int
    action: str  # created | updated | deleted
    payload: dict = field(default_factory=dict, compare=False, hash=False)
    sequence: int = 0


Handler = Callable[[ChangeEvent], None]


class EventBus:
    def __init__(self, journal_size: int = 1000):
        self._lock = threading.Lock()
        self._subscribers: List[Tuple[Optional[str], Handler]] = []
        self._journal: deque = deque(maxlen=journal_size)
        self._sequence = 0

    @property
    def sequence(self) -> int:
        return self._sequence

    def subscribe(self, handler: Handler, entity: str | None = None) -> Callable[[], None]:
        """Register a handler; returns a function that unsubscribes it."""
        entry = (entity, handler)
        with self._lock:
            self._subscribers.append(entry)

        def _unsubscribe():
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return _unsubscribe

    def publish(self, event: ChangeEvent) -> ChangeEvent:
        with self._lock:
            self._sequence += 1
            stamped = ChangeEvent(
                entity=event.entity,
                entity_id=event.entity_id,
                version=event.version,
                action=event.action,
                payload=event.payload,
                sequence=self._sequence,
            )
            self._journal.append(stamped)
            targets = [h for ent, h in self._subscribers if ent is None or ent == event.entity]

        for handler in targets:
            try:
                handler(stamped)
            except Exception:
                # One failing consumer must not block delivery to the others;
                # it can catch up through replay().
                logger.exception("Change handler failed for %s #%s", stamped.entity, stamped.entity_id)
        return stamped

    def replay(self, since: int = 0, entity: str | None = None) -> List[ChangeEvent]:
        """Journal entries with sequence > since (oldest first)."""
        with self._lock:
            return [
                e for e in self._journal
                if e.sequence > since and (entity is None or e.entity == entity)
            ]


class IdempotentApplier:
    """Apply each entity version once, whether it arrives by push or replay.

    Entities without a version column publish version 0; those are
    de-duplicated on the bus sequence number instead.
    """

    def __init__(self, handler: Handler):
        self._handler = handler
        self._applied: Dict[Tuple[str, int, bool], int] = {}
        self._lock = threading.Lock()

    def __call__(self, event: ChangeEvent) -> bool:
        versioned = event.version > 0
        key = (event.entity, event.entity_id, versioned)
        marker = event.version if versioned else event.sequence
        with self._lock:
            last = self._applied.get(key)
            if last is not None and marker <= last:
                return False
        self._handler(event)
        with self._lock:
            self._applied[key] = max(marker, self._applied.get(key, marker))
        return True


# Process-wide bus shared by the Streamlit sessions of one server
bus = EventBus()
