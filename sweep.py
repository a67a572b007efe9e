# sweep.py
import logging
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from reminders import ReminderKind, ReminderScheduler, SweepReport

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 5


def job_id(kind: ReminderKind) -> str:
    return f"{ReminderKind(kind).value}-reminders"


class SweepDriver:
    """Runs every reminder sweep on a fixed interval and on demand."""

    def __init__(
        self,
        reminder_scheduler: ReminderScheduler,
        interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.reminders = reminder_scheduler
        self.interval_minutes = interval_minutes
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._jobs_added = False

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def add_jobs(self) -> None:
        if self._jobs_added:
            return
        for kind in ReminderKind:
            self.scheduler.add_job(
                self.run_periodic,
                "interval",
                minutes=self.interval_minutes,
                args=[kind],
                id=job_id(kind),
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            logger.info(f"{kind.value} reminder sweep scheduled every {self.interval_minutes} minutes (UTC)")
        self._jobs_added = True

    def start(self) -> None:
        self.add_jobs()
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Reminder scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Reminder scheduler stopped")

    def run_periodic(self, kind: ReminderKind) -> Optional[SweepReport]:
        """Timer entry point; never raises into the scheduler thread."""
        try:
            return self.reminders.sweep(kind)
        except Exception:
            logger.exception(f"{ReminderKind(kind).value} reminder sweep failed")
            return None

    def trigger(self, kind: ReminderKind, now: Optional[datetime] = None) -> SweepReport:
        """Manual run of one sweep. Failures of the sweep as a whole reach the caller."""
        logger.info(f"Manual run of {ReminderKind(kind).value} reminders")
        return self.reminders.sweep(kind, now=now)

    def trigger_all(self, now: Optional[datetime] = None) -> Dict[ReminderKind, SweepReport]:
        return {kind: self.trigger(kind, now=now) for kind in ReminderKind}
