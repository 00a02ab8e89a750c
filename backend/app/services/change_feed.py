"""
Change notifications for the workflow store.

Rows flushed inside a transaction are snapshotted and published only after the
transaction commits; a rollback discards them. Observers should treat events as
"something changed, reload" signals rather than patches.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import event, inspect

logger = logging.getLogger(__name__)

WATCHED_TABLES = ("bp_readings", "medications", "emergency_sessions", "timers", "patients")

_PENDING_KEY = "change_feed_pending"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str  # "INSERT" or "UPDATE"
    row: Dict

    @property
    def patient_id(self) -> Optional[str]:
        if self.table == "patients":
            return self.row.get("id")
        return self.row.get("patient_id")


class Subscription:
    def __init__(self, feed: "ChangeFeed", callback, tables, patient_id):
        self.feed = feed
        self.callback = callback
        self.tables = frozenset(tables) if tables else None
        self.patient_id = patient_id
        self.active = True

    def matches(self, change: ChangeEvent) -> bool:
        if self.tables is not None and change.table not in self.tables:
            return False
        if self.patient_id is not None and change.patient_id != self.patient_id:
            return False
        return True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self.feed._remove(self)


def _snapshot(obj) -> Dict:
    state = inspect(obj)
    return {attr.key: getattr(obj, attr.key) for attr in state.mapper.column_attrs}


class ChangeFeed:

    def __init__(self, tables: Iterable[str] = WATCHED_TABLES):
        self.tables = frozenset(tables)
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def attach(self, session_factory) -> None:
        """Listen to every session produced by ``session_factory`` (a sessionmaker)."""
        event.listen(session_factory, "after_flush", self._after_flush)
        event.listen(session_factory, "after_commit", self._after_commit)
        event.listen(session_factory, "after_soft_rollback", self._after_rollback)

    def detach(self, session_factory) -> None:
        event.remove(session_factory, "after_flush", self._after_flush)
        event.remove(session_factory, "after_commit", self._after_commit)
        event.remove(session_factory, "after_soft_rollback", self._after_rollback)

    def subscribe(
        self,
        callback: Callable[[ChangeEvent], None],
        tables: Optional[Iterable[str]] = None,
        patient_id: Optional[str] = None,
    ) -> Subscription:
        subscription = Subscription(self, callback, tables, patient_id)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, change: ChangeEvent) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions if s.active and s.matches(change)]
        for subscription in targets:
            try:
                subscription.callback(change)
            except Exception:
                logger.exception("Change subscriber failed for %s %s", change.event_type, change.table)

    # ── SQLAlchemy session hooks ─────────────────────────────────────────────

    def _after_flush(self, session, flush_context) -> None:
        pending = session.info.setdefault(_PENDING_KEY, [])
        for obj in session.new:
            table = getattr(obj, "__tablename__", None)
            if table in self.tables:
                pending.append(ChangeEvent(table, "INSERT", _snapshot(obj)))
        for obj in session.dirty:
            table = getattr(obj, "__tablename__", None)
            if table in self.tables and session.is_modified(obj, include_collections=False):
                pending.append(ChangeEvent(table, "UPDATE", _snapshot(obj)))

    def _after_commit(self, session) -> None:
        pending = session.info.pop(_PENDING_KEY, [])
        for change in pending:
            self.publish(change)

    def _after_rollback(self, session, previous_transaction) -> None:
        session.info.pop(_PENDING_KEY, None)
