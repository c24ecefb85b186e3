from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler


logger = logging.getLogger(__name__)


class FeedScheduler:
    """Named interval jobs, one per feed.

    A job never overlaps itself on its timer (``max_instances=1``) and missed
    runs collapse into one. ``run_now`` executes the task on a worker thread;
    callers rely on the cache sequence check to drop a late result.
    """

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None) -> None:
        self._scheduler = scheduler or BackgroundScheduler()
        self._tasks: Dict[str, Callable[[], None]] = {}
        self._intervals: Dict[str, int] = {}

    def register(self, name: str, task: Callable[[], None], seconds: int) -> None:
        """Add or replace the timer for ``name``."""

        self._tasks[name] = task
        self._intervals[name] = seconds
        self._scheduler.add_job(
            task,
            "interval",
            seconds=seconds,
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Scheduled %s every %ss", name, seconds)

    def reschedule(self, name: str, seconds: int) -> None:
        if name not in self._tasks:
            raise KeyError(f"No feed job named {name}.")
        self._intervals[name] = seconds
        self._scheduler.reschedule_job(name, trigger="interval", seconds=seconds)
        logger.info("Rescheduled %s every %ss", name, seconds)

    def cancel(self, name: str) -> bool:
        self._tasks.pop(name, None)
        self._intervals.pop(name, None)
        try:
            self._scheduler.remove_job(name)
        except JobLookupError:
            return False
        logger.info("Cancelled %s", name)
        return True

    def run_now(self, name: str) -> threading.Thread:
        task = self._tasks.get(name)
        if task is None:
            raise KeyError(f"No feed job named {name}.")
        thread = threading.Thread(target=task, name=f"{name}-refresh", daemon=True)
        thread.start()
        return thread

    def run_all_now(self) -> List[threading.Thread]:
        return [self.run_now(name) for name in list(self._tasks)]

    def job_names(self) -> List[str]:
        return list(self._tasks)

    def interval(self, name: str) -> Optional[int]:
        return self._intervals.get(name)

    def next_run_time(self, name: str) -> Optional[datetime]:
        job = self._scheduler.get_job(name)
        return job.next_run_time if job is not None else None

    def start(self) -> None:
        self._scheduler.start()

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
