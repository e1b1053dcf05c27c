"""Scheduler service owning the engine's timers (polling cycle, roster retry, hourly cluster run)."""
from datetime import timedelta
from typing import Any, Callable, Dict, List

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from ..models.location_models import utcnow


def _next_run(job) -> str:
    # jobs added before the scheduler starts have no next_run_time yet
    next_run_time = getattr(job, "next_run_time", None)
    return str(next_run_time) if next_run_time else None


class SchedulerService:
    def __init__(self, scheduler: AsyncIOScheduler = None):
        self.scheduler = scheduler or AsyncIOScheduler()
        self.is_running = False

    def start_scheduler(self):
        """Start the scheduler; jobs added before start run once it is up."""
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        self.scheduler.start()
        self.is_running = True
        logger.success("🚀 Scheduler started")
        for job in self.scheduler.get_jobs():
            logger.info(f"📅 {job.name} next run: {getattr(job, 'next_run_time', None)}")

    def stop_scheduler(self):
        if not self.is_running:
            logger.warning("Scheduler is not running")
            return

        try:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("🛑 Scheduler stopped")
        except Exception as e:
            logger.error(f"Failed to stop scheduler: {e}")

    def add_interval_job(self, func: Callable, seconds: float, job_id: str, name: str,
                         run_immediately: bool = False):
        """Fixed-rate job: the next run is measured from the start of the previous one.

        A run that would overlap the previous one is skipped and missed runs coalesce.
        """
        options: Dict[str, Any] = {}
        if run_immediately:
            options["next_run_time"] = utcnow()
        return self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **options,
        )

    def add_cron_job(self, func: Callable, job_id: str, name: str, **cron_fields):
        return self.scheduler.add_job(
            func,
            trigger=CronTrigger(**cron_fields),
            id=job_id,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def schedule_once(self, func: Callable, delay_seconds: float, job_id: str, name: str):
        run_date = utcnow() + timedelta(seconds=delay_seconds)
        logger.info(f"⏰ {name} scheduled for {run_date.isoformat()}")
        return self.scheduler.add_job(
            func,
            trigger=DateTrigger(run_date=run_date),
            id=job_id,
            name=name,
            replace_existing=True,
        )

    def reschedule_interval(self, job_id: str, seconds: float):
        """Swap the interval of an existing job; the new interval counts from now."""
        if self.scheduler.get_job(job_id) is None:
            return None
        job = self.scheduler.reschedule_job(job_id, trigger=IntervalTrigger(seconds=seconds))
        logger.info(f"🔁 {job.name} rescheduled every {seconds:.0f}s, next run: {getattr(job, 'next_run_time', None)}")
        return job

    def remove_job(self, job_id: str) -> bool:
        if self.scheduler.get_job(job_id) is None:
            return False
        self.scheduler.remove_job(job_id)
        return True

    def get_jobs(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": _next_run(job),
                "trigger": str(job.trigger),
            }
            for job in self.scheduler.get_jobs()
        ]

    def get_scheduler_status(self):
        """Get current scheduler status and job information."""
        if not self.is_running:
            return {"status": "stopped", "message": "Scheduler is not running", "jobs": []}

        try:
            return {"status": "running", "jobs": self.get_jobs()}
        except Exception as e:
            return {"status": "error", "message": f"Error getting scheduler status: {e}"}
