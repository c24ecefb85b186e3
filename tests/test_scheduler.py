"""Tests for the named feed scheduler."""

from unittest.mock import MagicMock

import pytest
from apscheduler.jobstores.base import JobLookupError

from backend.scheduler import FeedScheduler


def test_register_adds_non_overlapping_job():
    backend = MagicMock()
    scheduler = FeedScheduler(backend)
    task = MagicMock()

    scheduler.register("transit", task, 30)

    backend.add_job.assert_called_once_with(
        task,
        "interval",
        seconds=30,
        id="transit",
        name="transit",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    assert scheduler.job_names() == ["transit"]
    assert scheduler.interval("transit") == 30


def test_register_replaces_existing_timer():
    backend = MagicMock()
    scheduler = FeedScheduler(backend)
    replacement = MagicMock()

    scheduler.register("weather", MagicMock(), 300)
    scheduler.register("weather", replacement, 600)

    assert scheduler.job_names() == ["weather"]
    assert scheduler.interval("weather") == 600
    scheduler.run_now("weather").join(timeout=5)
    replacement.assert_called_once_with()


def test_reschedule():
    backend = MagicMock()
    scheduler = FeedScheduler(backend)
    scheduler.register("vehicles", MagicMock(), 10)

    scheduler.reschedule("vehicles", 20)

    backend.reschedule_job.assert_called_once_with("vehicles", trigger="interval", seconds=20)
    assert scheduler.interval("vehicles") == 20
    with pytest.raises(KeyError):
        scheduler.reschedule("unknown", 5)


def test_cancel():
    backend = MagicMock()
    scheduler = FeedScheduler(backend)
    scheduler.register("drive", MagicMock(), 300)

    assert scheduler.cancel("drive") is True
    assert scheduler.job_names() == []

    backend.remove_job.side_effect = JobLookupError("drive")
    assert scheduler.cancel("drive") is False


def test_run_all_now():
    scheduler = FeedScheduler(MagicMock())
    tasks = {name: MagicMock() for name in ("transit", "weather")}
    for name, task in tasks.items():
        scheduler.register(name, task, 60)

    for thread in scheduler.run_all_now():
        thread.join(timeout=5)

    for task in tasks.values():
        task.assert_called_once_with()


def test_run_now_unknown():
    with pytest.raises(KeyError):
        FeedScheduler(MagicMock()).run_now("missing")
