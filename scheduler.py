import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import BalanceCheckService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.interval_hours = settings.balance_check_hours
        self.scheduler = BackgroundScheduler(timezone="UTC")

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"balance_check: source={source}")
        with session_scope() as session:
            drifts = BalanceCheckService(session).drift()
        for item in drifts:
            logger.warning(
                f"balance_drift: account={item.account_id} user={item.user_id} "
                f"stored_cents={item.stored_cents} expected_cents={item.expected_cents}"
            )
        logger.info(f"balance_check: source={source} drifted_accounts={len(drifts)}")
        return len(drifts)

    def start(self) -> None:
        if self.interval_hours <= 0:
            logger.info("Balance check scheduler disabled")
            return

        self._run_job("startup")

        trigger = IntervalTrigger(hours=self.interval_hours)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="balance_check",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with balance check every {self.interval_hours}h")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
