import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from recurrence import SweepResult
from services import run_recurring_sweep


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_sweep_job(source: str = "manual") -> SweepResult:
    logger.info(f"scheduler_run: source={source}")
    with session_scope() as session:
        result = run_recurring_sweep(session)
    logger.info(
        f"scheduler_run: source={source} posted={result.posted} "
        f"expired={result.expired} failed={result.failed}"
    )
    return result


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def start(self) -> None:
        trigger = CronTrigger(
            hour=self.settings.sweep_hour, minute=self.settings.sweep_minute
        )
        # one sweep per day and never two at once: every run advances each
        # due template by a single period
        self.scheduler.add_job(
            run_sweep_job,
            trigger,
            args=["daily_cron"],
            id="recurring_daily",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily sweep at "
            f"{self.settings.sweep_hour:02d}:{self.settings.sweep_minute:02d} "
            f"{self.settings.timezone}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
