"""
Background detection of expired protocol timers.

Expiry is never stored; the watcher polls active timers at a bounded interval and
fires ``on_expired`` once per timer id for the lifetime of the watcher (or until
``reset()``). A timer only counts as expired if it is still active on re-read and
its full declared duration has elapsed, so a timer superseded at the expiry instant
does not fire.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Set

from ..core.config import settings
from ..core.exceptions import StoreError
from ..models.base import utcnow
from ..models.timer import Timer
from .store import WorkflowStore

logger = logging.getLogger(__name__)


class TimerExpiryWatcher:

    def __init__(
        self,
        store: WorkflowStore,
        on_expired: Optional[Callable[[Timer], None]] = None,
        clock: Callable[[], datetime] = utcnow,
        patient_id: Optional[str] = None,
        interval: float = settings.TIMER_POLL_INTERVAL_SECONDS,
    ):
        self.store = store
        self.on_expired = on_expired
        self.clock = clock
        self.patient_id = patient_id
        self.interval = interval
        self._notified: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    @property
    def notified_timer_ids(self) -> Set[str]:
        return set(self._notified)

    def reset(self, patient_id: Optional[str] = None) -> None:
        """Forget acknowledged timers; optionally re-scope to another patient."""
        self._notified.clear()
        if patient_id is not None:
            self.patient_id = patient_id

    def check_once(self) -> List[Timer]:
        """One poll. Returns timers that expired since the previous poll."""
        now = self.clock()
        with self.store.reader() as db:
            active = self.store.all_active_timers(db, self.patient_id)
            # ids of deactivated timers never come back, so they can be dropped
            self._notified.intersection_update(t.id for t in active)
            candidates = [t.id for t in active if t.id not in self._notified and t.has_elapsed(now)]
        logger.debug("Timer poll: %d active, %d candidate(s)", len(active), len(candidates))

        fired = []
        for timer_id in candidates:
            with self.store.reader() as db:
                timer = self.store.get_timer(db, timer_id)
            if timer is None or not timer.is_active or not timer.has_elapsed(now):
                continue
            self._notified.add(timer.id)
            fired.append(timer)

        for timer in fired:
            logger.info("Timer %s (%s) expired for patient %s", timer.id, timer.type, timer.patient_id)
            if self.on_expired is None:
                continue
            try:
                self.on_expired(timer)
            except Exception:
                logger.exception("Expiry handler failed for timer %s", timer.id)
        return fired

    async def run(self) -> None:
        self._stopping = asyncio.Event()
        logger.info("Timer watcher started (interval=%ss, patient=%s)", self.interval, self.patient_id or "all")
        while not self._stopping.is_set():
            try:
                await asyncio.to_thread(self.check_once)
            except StoreError as exc:
                logger.warning("Timer poll skipped: %s", exc)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Timer watcher stopped")

    def start(self) -> asyncio.Task:
        """Schedule the poll loop on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._stopping is not None:
            self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
