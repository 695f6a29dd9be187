import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from periods import month_key, today_local
from services import BudgetService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


def ensure_month_budget(session, month: str) -> int:
    """Make sure ``month`` has a budget, rolling categories over from the prior month."""
    budget = BudgetService(session).get_or_create_for_month(month, copy_previous=True)
    return budget.id


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.timezone = settings.timezone
        self.enabled = settings.rollover_enabled
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        month = month_key(today_local(self.timezone))
        logger.info(f"rollover_run: source={source} month={month}")
        with session_scope() as session:
            budget_id = ensure_month_budget(session, month)
        logger.info(f"rollover_run: source={source} month={month} budget_id={budget_id}")

    def start(self) -> None:
        if not self.enabled:
            logger.info("Budget rollover scheduler disabled")
            return
        self._run_job("startup")

        trigger = CronTrigger(day=1, hour=0, minute=5)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["monthly_00:05"],
            id="budget_rollover_monthly",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with monthly budget rollover on day 1 at 00:05")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
