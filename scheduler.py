import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from recurrence import GenerationResult
from services import Ledger


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Runs generation passes in the background.

    Passes take the store's writer lock, so they serialize with user mutations.
    """

    def __init__(self, ledger: Ledger, interval_minutes: Optional[int] = None) -> None:
        settings = get_settings()
        self.ledger = ledger
        self.interval_minutes = interval_minutes or settings.scheduler_interval_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> Optional[GenerationResult]:
        logger.info(f"scheduler_run: source={source}")
        try:
            result = self.ledger.engine.run_pass()
        except Exception:
            logger.exception(f"scheduler_run_failed: source={source}")
            return None
        logger.info(
            f"scheduler_run: source={source} generated={result.generated} "
            f"settled={result.settled} failures={len(result.errors)}"
        )
        return result

    def start(self) -> None:
        trigger = CronTrigger(hour=0, minute=5)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_00:05"],
            id="generation_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval_safety_net"],
            id="generation_interval",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily 00:05 and {self.interval_minutes}min safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
