"""
Unit tests for the process-wide runtime.
"""

import os
import shutil
import tempfile
from datetime import datetime
from unittest.mock import patch

from llm_meter.config.loader import MeterConfig
from llm_meter.core.clock import ManualClock, SystemClock
from llm_meter.core.scheduler import SchedulerState
from llm_meter.runtime import Runtime


class TestRuntime:
    """Test runtime construction and lifecycle."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_components_share_configuration(self):
        """Verify every component uses the configured database."""
        runtime = Runtime(MeterConfig(db_path=self.db_path))
        assert os.path.exists(self.db_path)
        assert runtime.ledger.db_path == self.db_path
        assert runtime.catalog.db_path == self.db_path
        assert runtime.scheduler.state_store is runtime.reset_state
        assert isinstance(runtime.scheduler.clock, SystemClock)

    def test_ensure_initialized_once(self):
        """Verify the scheduler is initialized only once."""
        runtime = Runtime(
            MeterConfig(db_path=self.db_path), clock=ManualClock(datetime(2024, 1, 2))
        )
        with patch.object(runtime.scheduler, "initialize") as initialize:
            runtime.ensure_initialized()
            runtime.ensure_initialized()
        initialize.assert_called_once()
        assert runtime.initialized

    def test_scheduler_failure_does_not_raise(self):
        """Verify a failing scheduler start is logged, not raised."""
        runtime = Runtime(MeterConfig(db_path=self.db_path))
        with patch.object(runtime.scheduler, "initialize", side_effect=RuntimeError("boom")):
            runtime.ensure_initialized()
        assert runtime.initialized

    def test_shutdown_allows_restart(self):
        """Verify shutdown stops the scheduler and permits re-initialization."""
        clock = ManualClock(datetime(2024, 1, 2))
        runtime = Runtime(MeterConfig(db_path=self.db_path), clock=clock)

        runtime.ensure_initialized()
        runtime.shutdown()
        assert runtime.scheduler.state is SchedulerState.STOPPED
        assert not runtime.initialized

        runtime.ensure_initialized()
        assert runtime.scheduler.state is SchedulerState.RUNNING
        runtime.shutdown()

    def test_fresh_instances_are_independent(self):
        """Verify two runtimes do not share lifecycle state."""
        clock = ManualClock(datetime(2024, 1, 2))
        first = Runtime(MeterConfig(db_path=self.db_path), clock=clock)
        second = Runtime(MeterConfig(db_path=self.db_path), clock=clock)

        first.ensure_initialized()

        assert first.initialized
        assert not second.initialized
        first.shutdown()
