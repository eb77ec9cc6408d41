"""
Unit tests for scheduler (offsite/scheduler.py).

Tests APScheduler configuration, one-shot follow-up passes and the job
wrappers.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from offsite import scheduler as scheduler_module
from offsite.services import get_services


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def teardown_method(self):
        """Clean up after each test."""
        # Reset global scheduler
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    @patch('offsite.scheduler.BackgroundScheduler')
    def test_init_scheduler(self, mock_scheduler_class, app):
        """Test scheduler initialization."""
        mock_scheduler = MagicMock()
        mock_scheduler_class.return_value = mock_scheduler

        result = scheduler_module.init_scheduler(app)

        assert result == mock_scheduler
        assert scheduler_module.scheduler == mock_scheduler
        assert scheduler_module.flask_app == app

        call_kwargs = mock_scheduler_class.call_args[1]
        assert 'jobstores' in call_kwargs
        assert 'executors' in call_kwargs
        assert call_kwargs['job_defaults']['max_instances'] == 1
        assert call_kwargs['timezone'] == 'UTC'

        # Purge pass and metrics refresh are registered
        job_ids = [c[1]['id'] for c in mock_scheduler.add_job.call_args_list]
        assert job_ids == [scheduler_module.PURGE_JOB_ID, scheduler_module.METRICS_JOB_ID]
        purge_trigger = mock_scheduler.add_job.call_args_list[0][1]['trigger']
        assert purge_trigger.interval.total_seconds() == app.config['PURGE_INTERVAL_SECONDS']

    @patch('offsite.scheduler.BackgroundScheduler')
    def test_init_scheduler_only_once(self, mock_scheduler_class, app):
        """Test scheduler is only initialized once."""
        mock_scheduler_class.return_value = MagicMock()

        result1 = scheduler_module.init_scheduler(app)
        result2 = scheduler_module.init_scheduler(app)

        assert result1 == result2
        mock_scheduler_class.assert_called_once()


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.running = False
        self.mock_scheduler.state = 0
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_start_scheduler(self):
        """Test starting the scheduler."""
        self.mock_scheduler.get_jobs.return_value = []

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_called_once()

    def test_start_scheduler_not_initialized(self):
        """Test starting scheduler before initialization raises error."""
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.start_scheduler()

    def test_start_scheduler_already_running(self):
        """Test starting scheduler when already running."""
        self.mock_scheduler.running = True

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_not_called()

    def test_stop_scheduler(self):
        """Test stopping the scheduler."""
        self.mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_called_once()

    def test_stop_scheduler_not_running(self):
        """Test stopping scheduler when not running."""
        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_not_called()


class TestScheduleOnce:
    """Test one-shot jobs and follow-up purge passes."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.get_job.return_value = None
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_schedule_once_without_scheduler(self):
        """Test nothing is scheduled when this process has no scheduler."""
        scheduler_module.scheduler = None

        assert scheduler_module.schedule_once(1_700_000_000, print) is None

    def test_schedule_once_adds_date_job(self):
        """Test a one-shot job runs the hook at the timestamp."""
        job_id = scheduler_module.schedule_once(1_700_000_000, print, args=('hello',))

        call_kwargs = self.mock_scheduler.add_job.call_args[1]
        assert job_id == 'once_print_1700000000'
        assert call_kwargs['id'] == job_id
        assert call_kwargs['args'] == ['hello']
        assert call_kwargs['replace_existing'] is True
        assert call_kwargs['trigger'].run_date == datetime.fromtimestamp(1_700_000_000, timezone.utc)

    def test_schedule_purge_pass_replaces_later_follow_up(self):
        """Test an earlier follow-up replaces a pending later one."""
        existing = MagicMock()
        existing.next_run_time = datetime.fromtimestamp(1_700_000_600, timezone.utc)
        self.mock_scheduler.get_job.return_value = existing

        job_id = scheduler_module.schedule_purge_pass(1_700_000_060)

        assert job_id == scheduler_module.FOLLOWUP_JOB_ID
        call_kwargs = self.mock_scheduler.add_job.call_args[1]
        assert call_kwargs['id'] == scheduler_module.FOLLOWUP_JOB_ID
        assert call_kwargs['func'] is scheduler_module._run_purge_wrapper

    def test_schedule_purge_pass_keeps_earlier_follow_up(self):
        """Test a pending earlier follow-up is kept."""
        existing = MagicMock()
        existing.next_run_time = datetime.fromtimestamp(1_700_000_030, timezone.utc)
        self.mock_scheduler.get_job.return_value = existing

        scheduler_module.schedule_purge_pass(1_700_000_060)

        self.mock_scheduler.add_job.assert_not_called()


class TestJobWrappers:
    """Test the functions APScheduler runs."""

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_purge_wrapper_runs_worker(self, app):
        """Test the purge job runs one worker pass inside the app context."""
        scheduler_module.flask_app = app
        services = get_services(app)
        services.worker = MagicMock()
        services.worker.run.return_value = {'processed': 1, 'completed': ['a.zip'], 'retry': [], 'failed': []}

        scheduler_module._run_purge_wrapper()

        services.worker.run.assert_called_once()

    def test_purge_wrapper_logs_errors(self, app):
        """Test a crashing pass does not propagate into the scheduler thread."""
        scheduler_module.flask_app = app
        services = get_services(app)
        services.worker = MagicMock()
        services.worker.run.side_effect = RuntimeError('boom')

        scheduler_module._run_purge_wrapper()

    def test_metrics_wrapper_refreshes_snapshot(self, app):
        """Test the metrics job refreshes the storage snapshot."""
        scheduler_module.flask_app = app
        services = get_services(app)
        services.storage_metrics = MagicMock()

        scheduler_module._refresh_metrics_wrapper()

        services.storage_metrics.refresh_snapshot.assert_called_once()


class TestSchedulerQueries:
    """Test scheduler query functions."""

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None

    def test_get_scheduled_jobs(self):
        """Test listing scheduled jobs."""
        job = MagicMock()
        job.id = scheduler_module.PURGE_JOB_ID
        job.name = 'Remote Purge Pass'
        job.next_run_time = datetime(2024, 1, 1, tzinfo=timezone.utc)
        scheduler_module.scheduler = MagicMock()
        scheduler_module.scheduler.get_jobs.return_value = [job]

        jobs = scheduler_module.get_scheduled_jobs()

        assert jobs[0]['id'] == 'remote_purge'
        assert jobs[0]['next_run'] == '2024-01-01T00:00:00+00:00'

    def test_queries_without_scheduler(self):
        """Test queries are safe before initialization."""
        assert scheduler_module.get_scheduled_jobs() == []
        assert scheduler_module.is_scheduler_running() is False
