import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import LedgerService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Periodically audits cached plan balances against their ledgers.

    The job only reports drift; repairs go through the admin endpoint so a
    person decides when cached balances are overwritten.
    """

    def __init__(self) -> None:
        settings = get_settings()
        self.interval_hours = settings.reconcile_interval_hours
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"reconcile_run: source={source}")
        with session_scope() as session:
            drifted = LedgerService(session).reconcile_all(repair=False)
        for result in drifted:
            logger.warning(
                f"reconcile_drift: plan_id={result.plan_id} "
                f"cached={result.cached_balance} ledger={result.ledger_balance}"
            )
        logger.info(f"reconcile_run: source={source} drifted={len(drifted)}")
        return len(drifted)

    def start(self) -> None:
        self._run_job("startup")

        trigger = IntervalTrigger(hours=self.interval_hours)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="reconcile_balances",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with {self.interval_hours}h reconciliation")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
