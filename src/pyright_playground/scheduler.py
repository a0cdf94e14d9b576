import asyncio
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from loguru import logger

from pyright_playground.config import REAP_INTERVAL_SECONDS, SESSION_IDLE_SECONDS

if TYPE_CHECKING:
    from pyright_playground.manager import SessionManager

REAPER_JOB_ID = "reap_idle_sessions"


class IdleReaper:
    """Closes sessions that have not been looked up within the idle threshold.

    Runs as a one-shot job that re-arms itself after each sweep while any
    session remains, so nothing is scheduled while the manager is empty.
    """

    def __init__(
        self,
        manager: "SessionManager",
        interval_seconds: float = REAP_INTERVAL_SECONDS,
        idle_seconds: float = SESSION_IDLE_SECONDS,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self._manager = manager
        self.interval_seconds = interval_seconds
        self.idle_seconds = idle_seconds
        self._scheduler = scheduler
        self._armed = False

    @property
    def armed(self) -> bool:
        return self._armed

    def get_scheduler(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        return self._scheduler

    def arm(self) -> None:
        if self._armed:
            return

        scheduler = self.get_scheduler()
        if not scheduler.running:
            scheduler.start()
            logger.info(
                f"Idle session reaper started (interval: {self.interval_seconds}s, idle: {self.idle_seconds}s)"
            )

        run_date = datetime.now(timezone.utc) + timedelta(seconds=self.interval_seconds)
        scheduler.add_job(
            self._run,
            trigger=DateTrigger(run_date=run_date),
            id=REAPER_JOB_ID,
            replace_existing=True,
            misfire_grace_time=None,
        )
        self._armed = True

    def disarm(self) -> None:
        if not self._armed:
            return
        self._armed = False
        if self._scheduler is None:
            return
        try:
            self._scheduler.remove_job(REAPER_JOB_ID)
        except JobLookupError:
            pass

    async def sweep(self, now: Optional[float] = None) -> int:
        if now is None:
            now = self._manager.now()

        expired = [
            session
            for session in self._manager.sessions()
            if session.idle_seconds(now) > self.idle_seconds
        ]
        if not expired:
            logger.debug("No idle sessions to reclaim")
            return 0

        for session in expired:
            logger.info(f"Session {session.short_id}... timed out; deleting")
            await self._manager.close(session.id)
        return len(expired)

    async def _run(self) -> None:
        self._armed = False
        try:
            await self.sweep()
        finally:
            if self._manager.session_count > 0:
                self.arm()

    async def shutdown(self) -> None:
        self.disarm()
        scheduler = self._scheduler
        self._scheduler = None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
            # AsyncIOScheduler runs its shutdown on the next loop iteration.
            await asyncio.sleep(0)
            logger.info("Idle session reaper stopped")
