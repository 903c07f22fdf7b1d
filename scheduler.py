import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import AccountService, SavingService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def check_ledgers(session) -> int:
    """Log every savings entry that disagrees with its transactions; returns the count."""
    found = 0
    for account in AccountService(session).list_all():
        for problem in SavingService(session, account.id).find_inconsistencies():
            found += 1
            logger.warning(
                f"ledger_drift: account_id={account.id} date={problem.date} "
                f"expected={problem.expected_cents} actual={problem.actual_cents}"
            )
    return found


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.interval_hours = settings.ledger_check_hours
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"ledger_check: source={source}")
        with session_scope() as session:
            count = check_ledgers(session)
            logger.info(f"ledger_check: source={source} discrepancies={count}")

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="ledger_check_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=self.interval_hours)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"every_{self.interval_hours}h"],
            id="ledger_check_interval",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily 03:15 and {self.interval_hours}h ledger checks"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
