"""
Maintenance Scheduler

Cron-driven background jobs:
- retention sweep (RETENTION_CRON, default 02:00 daily)
- weekly archival (Sunday 03:00)
- monthly retention compliance check (1st, 04:00)
- amendment expiry (every AMENDMENT_EXPIRY_INTERVAL_MINUTES)
- channel health alert evaluation (every minute)

Uses APScheduler for cron-based scheduling. All times are UTC.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import settings
from ..errors import OTACoreError
from ..utils.db_helpers import run_blocking

logger = logging.getLogger(__name__)

SCHEDULER_TIMEZONE = "UTC"


class MaintenanceScheduler:
    def __init__(self, retention=None, amendments=None, monitor=None, retention_cron: Optional[str] = None):
        self.retention = retention
        self.amendments = amendments
        self.monitor = monitor
        self.retention_cron = retention_cron or settings.retention_cron
        self._scheduler: Optional[AsyncIOScheduler] = None
        self.last_results: Dict[str, Dict[str, Any]] = {}

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> bool:
        if self.running:
            logger.warning("Maintenance scheduler is already running")
            return True

        self._scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)

        if self.retention is not None:
            self._scheduler.add_job(
                self.run_retention_sweep,
                CronTrigger.from_crontab(self.retention_cron, timezone=SCHEDULER_TIMEZONE),
                id="retention_sweep",
                name="Payload retention sweep",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            self._scheduler.add_job(
                self.run_weekly_archival,
                CronTrigger(day_of_week="sun", hour=3, minute=0, timezone=SCHEDULER_TIMEZONE),
                id="weekly_archival",
                name="Weekly payload archival",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            self._scheduler.add_job(
                self.run_compliance_check,
                CronTrigger(day=1, hour=4, minute=0, timezone=SCHEDULER_TIMEZONE),
                id="retention_compliance",
                name="Monthly retention compliance check",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        if self.amendments is not None:
            self._scheduler.add_job(
                self.run_amendment_expiry,
                IntervalTrigger(minutes=settings.amendment_expiry_interval_minutes, timezone=SCHEDULER_TIMEZONE),
                id="amendment_expiry",
                name="Expire stale pending amendments",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        if self.monitor is not None:
            self._scheduler.add_job(
                self.run_alert_evaluation,
                IntervalTrigger(minutes=1, timezone=SCHEDULER_TIMEZONE),
                id="channel_alerts",
                name="Channel health alert evaluation",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        self._scheduler.start()
        logger.info(f"📅 Maintenance scheduler started ({len(self._scheduler.get_jobs())} jobs, retention '{self.retention_cron}')")
        return True

    def stop(self):
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("📅 Maintenance scheduler stopped")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def _run_job(self, name: str, job):
        started = datetime.utcnow()
        try:
            result = await job()
            self.last_results[name] = {"ok": True, "at": started.isoformat(), "result": result}
            return result
        except OTACoreError as e:
            logger.error(f"Scheduled job {name} failed: {e.code}: {e.message}")
            self.last_results[name] = {"ok": False, "at": started.isoformat(), "error": e.message}
        except Exception as e:
            # keep the scheduler alive; next tick retries
            logger.exception(f"Scheduled job {name} crashed: {e}")
            self.last_results[name] = {"ok": False, "at": started.isoformat(), "error": str(e)}
        return None

    async def run_retention_sweep(self):
        return await self._run_job("retention_sweep", self.retention.run_sweep)

    async def run_weekly_archival(self):
        return await self._run_job("weekly_archival", self.retention.run_weekly_archival)

    async def run_compliance_check(self):
        return await self._run_job("retention_compliance", self.retention.run_compliance_check)

    async def run_amendment_expiry(self):
        return await self._run_job("amendment_expiry", self.amendments.expire_stale)

    async def run_alert_evaluation(self):
        async def evaluate():
            return await run_blocking(self.monitor.evaluate_alerts)
        return await self._run_job("channel_alerts", evaluate)

    def status(self) -> Dict[str, Any]:
        """Scheduler state with next run time per job"""
        jobs = []
        if self.running:
            for job in self._scheduler.get_jobs():
                jobs.append({
                    "id": job.id,
                    "name": job.name,
                    "nextRun": job.next_run_time.isoformat() if job.next_run_time else None,
                })
        return {
            "running": self.running,
            "timezone": SCHEDULER_TIMEZONE,
            "jobs": jobs,
            "lastResults": self.last_results,
        }
