"""Scheduler tests: wall-clock cadence, job registry, manual triggers"""
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock
from zoneinfo import ZoneInfo

import pytest

from conftest import TestSessionLocal
from subsync.models.subscription import Subscription
from subsync.services.user_service import create_user, get_or_create_free_subscription
from subsync.tasks.scheduler import BillingScheduler, Cadence, _format_hour, next_run_time
from subsync.tasks.task_queue import TaskQueue
from subsync.utils.dates import utcnow

SAO_PAULO = ZoneInfo("America/Sao_Paulo")


@pytest.fixture
def scheduler(db_session, lifecycle, test_settings):
    return BillingScheduler(lifecycle, TaskQueue(TestSessionLocal), TestSessionLocal, test_settings)


@pytest.mark.high
class TestCadence:
    """Next fire time is computed in the scheduler's timezone"""

    def test_hourly(self):
        now = datetime(2025, 6, 10, 12, 15, tzinfo=timezone.utc)
        assert next_run_time(Cadence(minute=0), now, SAO_PAULO) == datetime(2025, 6, 10, 13, 0, tzinfo=timezone.utc)

    def test_hourly_on_the_boundary_is_strictly_after(self):
        now = datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc)
        assert next_run_time(Cadence(minute=0), now, SAO_PAULO) == datetime(2025, 6, 10, 13, 0, tzinfo=timezone.utc)

    def test_daily_later_today(self):
        # 08:00 in Sao Paulo (UTC-3)
        now = datetime(2025, 6, 10, 11, 0, tzinfo=timezone.utc)
        assert next_run_time(Cadence(hour=9), now, SAO_PAULO) == datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc)

    def test_daily_tomorrow(self):
        now = datetime(2025, 6, 10, 13, 0, tzinfo=timezone.utc)
        assert next_run_time(Cadence(hour=9), now, SAO_PAULO) == datetime(2025, 6, 11, 12, 0, tzinfo=timezone.utc)

    def test_daily_with_minute(self):
        now = datetime(2025, 6, 10, 3, 0, tzinfo=timezone.utc)
        assert next_run_time(Cadence(minute=30, hour=2), now, SAO_PAULO) == datetime(2025, 6, 10, 5, 30, tzinfo=timezone.utc)

    def test_monthly(self):
        now = datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc)
        assert next_run_time(Cadence(hour=2, day=1), now, SAO_PAULO) == datetime(2025, 7, 1, 5, 0, tzinfo=timezone.utc)

    def test_monthly_rolls_over_year(self):
        now = datetime(2025, 12, 15, tzinfo=timezone.utc)
        assert next_run_time(Cadence(hour=2, day=1), now, SAO_PAULO) == datetime(2026, 1, 1, 5, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("hour, label", [(0, "12 AM"), (2, "2 AM"), (9, "9 AM"), (12, "12 PM"), (15, "3 PM")])
    def test_format_hour(self, hour, label):
        assert _format_hour(hour) == label


@pytest.mark.high
class TestJobs:
    """Registered jobs and their execution"""

    def test_job_descriptions(self, scheduler):
        assert scheduler.get_status()["jobs"] == [
            "Subscription expiration check - Every hour",
            "Expiration alerts - Daily at 9 AM (America/Sao_Paulo)",
            "Payment records cleanup - Monthly on 1st at 2 AM (America/Sao_Paulo)",
            "Task queue cleanup - Daily at 2 AM (America/Sao_Paulo)",
        ]

    def test_queue_maintenance_needs_a_queue(self, lifecycle, test_settings):
        scheduler = BillingScheduler(lifecycle, None, TestSessionLocal, test_settings)
        assert "task_queue_maintenance" not in scheduler.jobs
        assert len(scheduler.jobs) == 3

    def test_status_before_start(self, scheduler):
        status = scheduler.get_status()
        assert status["initialized"] is False
        assert set(status["next_runs"]) == set(scheduler.jobs)
        for value in status["next_runs"].values():
            assert datetime.fromisoformat(value) > utcnow()

    def test_trigger_expiration_check(self, scheduler, db_session):
        user = create_user("lapsed@example.com", db=db_session)
        subscription = get_or_create_free_subscription(user.id, db_session)
        subscription.plan_id = "pro"
        subscription.gateway = "stripe"
        subscription.current_period_end = utcnow() - timedelta(days=10)
        db_session.commit()

        assert scheduler.trigger_expiration_check() == 1

        db_session.expire_all()
        assert db_session.query(Subscription).one().plan_id == "free"

    def test_expiration_alerts_job(self, scheduler, db_session):
        user = create_user("ending@example.com", db=db_session)
        subscription = get_or_create_free_subscription(user.id, db_session)
        subscription.plan_id = "pro"
        subscription.current_period_end = utcnow() - timedelta(hours=6)
        db_session.commit()

        result = scheduler.run_job("expiration_alerts")

        assert result == {"past_due": 1, "expiring_in_3_days": [], "expiring_in_7_days": []}

    def test_queue_maintenance_job(self, scheduler):
        assert scheduler.run_job("task_queue_maintenance") == {"requeued": 0, "deleted": 0}

    def test_job_error_propagates_from_run_job(self, test_settings):
        lifecycle = Mock()
        lifecycle.expire_subscriptions.side_effect = RuntimeError("database unavailable")
        scheduler = BillingScheduler(lifecycle, None, Mock(), test_settings)
        with pytest.raises(RuntimeError):
            scheduler.run_job("expiration_check")


@pytest.mark.high
class TestControl:
    """Start/stop of the background loops"""

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, scheduler):
        scheduler.start()
        tasks = list(scheduler._tasks)
        scheduler.start()

        assert scheduler.get_status()["initialized"] is True
        assert scheduler._tasks == tasks
        assert len(tasks) == 4

        await scheduler.shutdown()
        assert scheduler.get_status()["initialized"] is False
        assert all(task.done() for task in tasks)
