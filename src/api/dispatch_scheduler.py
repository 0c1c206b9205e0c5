"""Background trigger for the execution dispatcher.

Each instance runs an APScheduler interval job that performs one dispatch tick. Correctness
across several instances relies on the store claim, not on the scheduler, so running the job
in every replica is safe.
"""

import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.core.schedules.dispatcher import ExecutionDispatcher

logger = logging.getLogger(__name__)

DISPATCH_JOB_ID = "auto_invest_dispatch_tick"


class DispatchScheduler:
    def __init__(
        self,
        *,
        dispatcher_factory: Callable[[], ExecutionDispatcher],
        interval_seconds: int,
    ) -> None:
        self._dispatcher_factory = dispatcher_factory
        self._interval_seconds = interval_seconds
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def run_tick(self) -> None:
        try:
            result = self._dispatcher_factory().tick()
        except Exception:
            logger.exception("auto_invest.dispatch.tick_failed")
            return
        logger.info(
            "auto_invest.dispatch.tick_completed",
            extra={
                "extra_fields": {
                    "due_count": result.due_count,
                    "executed": len(result.executed),
                    "failed": len(result.failed),
                    "skipped": len(result.skipped),
                }
            },
        )

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self.run_tick,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=DISPATCH_JOB_ID,
            name="Auto-invest dispatch tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "auto_invest.dispatch.scheduler_started",
            extra={"extra_fields": {"interval_seconds": self._interval_seconds}},
        )

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("auto_invest.dispatch.scheduler_stopped")
