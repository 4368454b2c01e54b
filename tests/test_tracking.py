"""
Tests for the tracking API: registration, run/subtask lifecycle, terminal states
"""

from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from tasktrack import db
from tasktrack.errors import InvalidArgumentError, TaskNotRegisteredError
from tasktrack.models import MetricsRetention, Stage, Task
from tasktrack.services import query, tracking
from tasktrack.services.tracking import FAILED_SUBTASK_MESSAGE, RunHandle


class TestRegistration:
    """register_task is an idempotent upsert."""

    def test_register_twice_returns_same_task(self, store):
        first = tracking.register_task("PREP", "load_data", task_type="python")
        second = tracking.register_task("PREP", "load_data")
        assert first == second

        with db.session_scope() as session:
            assert session.execute(select(Stage)).scalars().all()[0].stage_name == "PREP"
            tasks = session.execute(select(Task)).scalars().all()
            assert len(tasks) == 1
            # attributes not passed on re-registration are kept
            assert tasks[0].task_type == "python"

    def test_reregister_overwrites_passed_attributes(self, store):
        tracking.register_task("PREP", "load_data", log_filename="a.log")
        tracking.register_task("PREP", "load_data", log_filename="b.log", task_order=4)
        with db.session_scope() as session:
            task = session.execute(select(Task)).scalar_one()
            assert task.log_filename == "b.log"
            assert task.task_order == 4

    def test_same_task_name_in_two_stages(self, store):
        a = tracking.register_task("PREP", "load")
        b = tracking.register_task("REPORT", "load")
        assert a != b

    def test_empty_names_rejected(self, store):
        with pytest.raises(InvalidArgumentError):
            tracking.register_task("", "load")
        with pytest.raises(InvalidArgumentError):
            tracking.register_task("PREP", "  ")


class TestRunLifecycle:
    """Run state machine."""

    def test_start_run_unregistered_task_raises(self, store):
        with pytest.raises(TaskNotRegisteredError):
            tracking.start_run("PREP", "missing")

    def test_start_run_records_started(self, run):
        info = query.get_run(run.run_id)
        assert isinstance(run, RunHandle)
        assert info.status == "STARTED"
        assert info.total_subtasks == 3
        assert info.start_time is not None
        assert info.end_time is None
        assert info.process_id == run.process_id

    def test_update_run_progress(self, run):
        assert tracking.update_run(run, status="RUNNING", percent=40, message="halfway-ish")
        info = query.get_run(run.run_id)
        assert info.status == "RUNNING"
        assert info.overall_percent_complete == 40
        assert info.overall_progress_message == "halfway-ish"

    def test_update_run_rejects_bad_values(self, run):
        with pytest.raises(InvalidArgumentError):
            tracking.update_run(run, percent=150)
        with pytest.raises(InvalidArgumentError):
            tracking.update_run(run, status="STARTED")
        with pytest.raises(InvalidArgumentError):
            tracking.update_run(run, status="BOGUS")

    def test_complete_run(self, run):
        assert tracking.complete_run(run, message="done")
        info = query.get_run(run.run_id)
        assert info.status == "COMPLETED"
        assert info.overall_percent_complete == 100
        assert info.end_time is not None

    def test_completed_status_without_percent_finishes_at_100(self, run):
        tracking.update_run(run, percent=40)
        assert tracking.update_run(run, status="COMPLETED")
        info = query.get_run(run.run_id)
        assert info.status == "COMPLETED"
        assert info.overall_percent_complete == 100
        assert info.end_time is not None

    def test_terminal_run_schedules_retention(self, run):
        tracking.complete_run(run)
        with db.session_scope() as session:
            row = session.get(MetricsRetention, run.run_id)
            assert row is not None
            assert row.metrics_deleted is False
            assert row.metrics_delete_after > row.task_completed_at

    def test_complete_after_fail_is_noop(self, run):
        assert tracking.fail_run(run, "boom", error_detail="Traceback ...")
        before = query.get_run(run.run_id)

        assert tracking.complete_run(run) is False
        after = query.get_run(run.run_id)
        assert after.status == "FAILED"
        assert after.error_message == "boom"
        assert after.end_time == before.end_time
        assert after.overall_percent_complete == before.overall_percent_complete

    def test_update_after_cancel_is_noop(self, run):
        assert tracking.cancel_run(run, message="user abort")
        assert tracking.update_run(run, percent=10) is False
        assert query.get_run(run.run_id).status == "CANCELLED"

    def test_skip_run(self, run):
        assert tracking.skip_run(run.run_id)
        assert query.get_run(run.run_id).status == "SKIPPED"

    def test_unknown_run_is_noop(self, store):
        assert tracking.update_run("00000000-0000-0000-0000-000000000000", percent=5) is False

    def test_fail_run_fails_open_subtasks(self, run):
        tracking.start_subtask(run, "first")
        tracking.complete_subtask(run)
        tracking.start_subtask(run, "second")

        tracking.fail_run(run, "worker crashed")
        subtasks = {s.subtask_number: s for s in query.get_subtask_progress(run.run_id)}
        assert subtasks[1].status == "COMPLETED"
        assert subtasks[2].status == "FAILED"
        assert subtasks[2].error_message == FAILED_SUBTASK_MESSAGE
        assert subtasks[2].end_time is not None


class TestSubtasks:

    def test_start_subtask_moves_run_to_running(self, run):
        number = tracking.start_subtask(run, "download", items_total=10)
        assert number == 1
        assert run.current_subtask == 1
        info = query.get_run(run.run_id)
        assert info.status == "RUNNING"
        assert info.current_subtask == 1

    def test_subtask_numbers_follow_handle(self, run):
        assert tracking.start_subtask(run, "a") == 1
        assert tracking.start_subtask(run, "b") == 2
        assert tracking.start_subtask(run, "c", number=7) == 7
        assert tracking.start_subtask(run, "d") == 8

    def test_subtask_numbers_for_bare_run_id(self, run):
        tracking.start_subtask(run.run_id, "a", number=3)
        assert tracking.start_subtask(run.run_id, "b") == 4

    def test_restarting_subtask_upserts(self, run):
        tracking.start_subtask(run, "download", number=1, items_total=5)
        tracking.update_subtask(run, number=1, items_complete=3)
        tracking.start_subtask(run, "download again", number=1, items_total=8)

        subtasks = query.get_subtask_progress(run.run_id)
        assert len(subtasks) == 1
        assert subtasks[0].subtask_name == "download again"
        assert subtasks[0].items_total == 8
        # items counted before the restart are kept
        assert subtasks[0].items_complete == 3

    def test_restarting_terminal_subtask_is_ignored(self, run):
        tracking.start_subtask(run, "download", number=1, items_total=4)
        assert tracking.complete_subtask(run, number=1, items_complete=4)

        assert tracking.start_subtask(run, "download again", number=1) is None

        subtask = query.get_subtask_progress(run.run_id)[0]
        assert subtask.subtask_name == "download"
        assert subtask.status == "COMPLETED"
        assert subtask.items_complete == 4

    def test_update_subtask_absolute_values(self, run):
        tracking.start_subtask(run, "download", items_total=4)
        assert tracking.update_subtask(run, items_complete=1, message="one")
        assert tracking.update_subtask(run, items_complete=3)
        sub = query.get_subtask_progress(run.run_id)[0]
        assert sub.items_complete == 3
        assert sub.percent_complete == pytest.approx(75.0)
        assert sub.progress_message == "one"

    def test_complete_subtask_fills_items(self, run):
        tracking.start_subtask(run, "download", items_total=4)
        assert tracking.complete_subtask(run)
        sub = query.get_subtask_progress(run.run_id)[0]
        assert sub.status == "COMPLETED"
        assert sub.items_complete == 4
        assert sub.percent_complete == 100
        assert sub.end_time is not None

    def test_terminal_subtask_is_final(self, run):
        tracking.start_subtask(run, "download")
        tracking.fail_subtask(run, "disk full")
        assert tracking.complete_subtask(run) is False
        sub = query.get_subtask_progress(run.run_id)[0]
        assert sub.status == "FAILED"
        assert sub.error_message == "disk full"

    def test_subtask_on_terminal_run_ignored(self, run):
        tracking.complete_run(run)
        assert tracking.start_subtask(run, "late") is None
        assert query.get_subtask_progress(run.run_id) == []

    def test_subtask_number_required_for_bare_run_id(self, run):
        with pytest.raises(InvalidArgumentError):
            tracking.update_subtask(run.run_id, percent=10)


class TestStoreFailures:
    """Store failures are logged and swallowed, never raised."""

    def _broken(self):
        return patch("tasktrack.db.session_scope",
                     side_effect=OperationalError("SELECT 1", {}, Exception("database unreachable")))

    def test_start_run_returns_none(self, registered):
        with self._broken():
            assert tracking.start_run("PREP", "load_data") is None

    def test_updates_return_false(self, run):
        with self._broken():
            assert tracking.update_run(run, percent=10) is False
            assert tracking.complete_run(run) is False
            assert tracking.start_subtask(run, "x") is None
        assert query.get_run(run.run_id).status == "STARTED"

    def test_register_returns_none(self, store):
        with self._broken():
            assert tracking.register_task("PREP", "load") is None


class TestMaintenance:

    def test_reset_task_deletes_runs_and_children(self, run):
        tracking.start_subtask(run, "a")
        other = tracking.start_run("PREP", "load_data")
        assert tracking.reset_task("PREP", "load_data", run_id=run.run_id) == 1
        assert query.get_run(run.run_id) is None
        assert query.get_subtask_progress(run.run_id) == []
        assert query.get_run(other.run_id) is not None

        assert tracking.reset_task("PREP", "load_data") == 1
        assert query.get_run(other.run_id) is None

    def test_reset_unknown_task_raises(self, store):
        with pytest.raises(TaskNotRegisteredError):
            tracking.reset_task("PREP", "nope")

    def test_delete_stage(self, run):
        tracking.register_task("PREP", "second")
        tracking.register_task("OTHER", "keep")
        result = tracking.delete_stage("PREP")
        assert result.stage_deleted is True
        assert result.tasks_deleted == 2
        assert result.runs_deleted == 1
        assert [s.stage_name for s in query.get_stages()] == ["OTHER"]

    def test_delete_missing_stage(self, store):
        result = tracking.delete_stage("GHOST")
        assert result.stage_deleted is False

    def test_purge(self, run):
        counts = tracking.purge_tracking_data()
        assert counts["task_runs"] == 1
        assert counts["stages"] == 1
        assert query.get_stages() == []
