"""
Scheduler Service Module
Runs the periodic sync jobs using APScheduler

Jobs call the same orchestrator methods as the manual triggers, so a poll
that fires during a manual pass is rejected by the single-flight guard
rather than run twice.
"""

from typing import Any, Awaitable, Callable, Dict, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..utils.logger import logger


class SchedulerService:
    """Owns one AsyncIOScheduler and its interval jobs"""

    def __init__(self):
        self.scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self) -> None:
        if self.scheduler is None:
            self.scheduler = AsyncIOScheduler()

        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")

    def stop(self) -> None:
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self.scheduler = None

    def add_interval_job(self, job_id: str, func: Callable[[], Awaitable[Any]], seconds: int) -> None:
        """Schedule ``func`` every ``seconds``; an existing job with the same id is replaced"""
        self.start()
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            name=job_id.replace("_", " ").title(),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled {job_id} every {seconds}s")

    def remove_all_jobs(self) -> None:
        if self.scheduler:
            self.scheduler.remove_all_jobs()

    def get_status(self) -> Dict[str, Any]:
        jobs = []
        if self.scheduler:
            for job in self.scheduler.get_jobs():
                next_run = job.next_run_time
                jobs.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run": next_run.isoformat() if next_run else None
                })

        return {
            "is_running": self.is_running,
            "jobs": jobs
        }
