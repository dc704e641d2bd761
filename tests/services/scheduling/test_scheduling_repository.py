"""
Tests for scheduling repository functionality.

Runs against an in-memory SQLite database; the mocked-session tests cover
the unit-of-work rules when a caller supplies its own session.
"""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from scripttask.core.exceptions import (
    InvalidJobTransitionError,
    JobNotFoundError,
    ScheduleNotFoundError,
)
from scripttask.models.scheduling import JobState, Schedule
from scripttask.services.scheduling.repository import (
    SchedulingRepository,
    SchedulingRepositoryError,
)
from scripttask.utils.timeutils import as_utc


class TestRepositorySessions:
    """Test suite for session handling"""

    def test_init_with_session(self):
        session = Mock()
        repo = SchedulingRepository(db=session)

        assert repo._db is session
        assert not repo._auto_commit

    def test_external_session_is_flushed_not_committed(self):
        session = Mock()
        session.get.return_value = None
        repo = SchedulingRepository(db=session)

        assert repo.get_schedule("missing") is None
        session.flush.assert_called_once()
        session.commit.assert_not_called()
        session.close.assert_not_called()

    def test_database_errors_are_wrapped(self):
        session = Mock()
        session.get.side_effect = OperationalError("SELECT", {}, Exception("locked"))
        repo = SchedulingRepository(db=session)

        with pytest.raises(SchedulingRepositoryError, match="Database operation failed"):
            repo.get_schedule("s-1")


class TestScheduleRecords:
    """Test suite for schedule persistence"""

    def test_create_and_get(self, scheduling_repository, make_schedule):
        created = make_schedule(nodes=["node-1", "node-2"], meshes=["mesh-b"])

        stored = scheduling_repository.get_schedule(created.id)

        assert isinstance(stored, Schedule)
        assert stored.nodes == ["node-1", "node-2"]
        assert stored.meshes == ["mesh-b"]
        assert stored.run_count == 0
        assert stored.enabled is True

    def test_require_unknown_schedule(self, scheduling_repository):
        with pytest.raises(ScheduleNotFoundError):
            scheduling_repository.require_schedule("missing")

    def test_list_filters_by_enabled(self, scheduling_repository, make_schedule):
        make_schedule(name="a-enabled")
        make_schedule(name="b-disabled", enabled=False)

        assert [s.name for s in scheduling_repository.list_schedules()] == ["a-enabled", "b-disabled"]
        assert [s.name for s in scheduling_repository.list_schedules(enabled=True)] == ["a-enabled"]

    def test_record_run_increments_count(self, scheduling_repository, make_schedule):
        schedule = make_schedule()
        first = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
        second = datetime(2024, 1, 16, 9, 0, tzinfo=timezone.utc)

        scheduling_repository.record_run(schedule.id, first, second)
        scheduling_repository.record_run(schedule.id, second, None)

        stored = scheduling_repository.get_schedule(schedule.id)
        assert stored.run_count == 2
        assert as_utc(stored.last_run_at) == second
        assert stored.next_run_at is None

    def test_increment_fail_count(self, scheduling_repository, make_schedule):
        schedule = make_schedule()

        scheduling_repository.increment_fail_count(schedule.id)

        assert scheduling_repository.get_schedule(schedule.id).fail_count == 1

    def test_update_and_delete(self, scheduling_repository, make_schedule):
        schedule = make_schedule()

        updated = scheduling_repository.update_schedule(schedule.id, {"name": "renamed"})
        assert updated.name == "renamed"

        assert scheduling_repository.delete_schedule(schedule.id) is True
        assert scheduling_repository.get_schedule(schedule.id) is None
        with pytest.raises(ScheduleNotFoundError):
            scheduling_repository.update_schedule(schedule.id, {"name": "gone"})

    def test_id_lists_must_be_lists(self, scheduling_repository):
        with pytest.raises(ValueError):
            scheduling_repository.create_schedule(
                {"name": "x", "script_id": "s", "cron_expression": "0 9 * * *", "nodes": "node-1"}
            )


class TestJobRecords:
    """Test suite for job persistence and state transitions"""

    def _job(self, repository, node_id="node-1", mesh_id="mesh-a", **extra):
        return repository.create_job(
            {"script_id": "check-disk", "node_id": node_id, "mesh_id": mesh_id, **extra}
        )

    def test_new_job_is_pending(self, scheduling_repository):
        job = self._job(scheduling_repository)

        assert job.state == JobState.PENDING
        assert job.retry_count == 0

    def test_forward_transitions(self, scheduling_repository):
        job = self._job(scheduling_repository)

        running = scheduling_repository.transition_job(job.id, JobState.RUNNING)
        assert running.started_at is not None

        done = scheduling_repository.transition_job(job.id, JobState.COMPLETE, exit_code=0)
        assert done.state == JobState.COMPLETE
        assert done.exit_code == 0
        assert done.finished_at is not None

    @pytest.mark.parametrize(
        "terminal", [JobState.COMPLETE, JobState.ERROR, JobState.CANCELLED]
    )
    def test_no_transition_out_of_terminal_state(self, scheduling_repository, terminal):
        job = self._job(scheduling_repository)
        scheduling_repository.transition_job(job.id, terminal)

        for target in (JobState.PENDING, JobState.RUNNING, JobState.COMPLETE):
            with pytest.raises(InvalidJobTransitionError):
                scheduling_repository.transition_job(job.id, target)

    def test_running_cannot_return_to_pending(self, scheduling_repository):
        job = self._job(scheduling_repository)
        scheduling_repository.transition_job(job.id, JobState.RUNNING)

        with pytest.raises(InvalidJobTransitionError):
            scheduling_repository.transition_job(job.id, JobState.PENDING)

    def test_transition_unknown_job(self, scheduling_repository):
        with pytest.raises(JobNotFoundError):
            scheduling_repository.transition_job("missing", JobState.RUNNING)

    def test_count_active_jobs(self, scheduling_repository):
        self._job(scheduling_repository, "node-1", "mesh-a")
        self._job(scheduling_repository, "node-2", "mesh-a", state=JobState.RUNNING)
        self._job(scheduling_repository, "node-3", "mesh-b")
        self._job(scheduling_repository, "node-1", "mesh-a", state=JobState.ERROR)

        assert scheduling_repository.count_active_jobs() == 3
        assert scheduling_repository.count_active_jobs(node_id="node-1") == 1
        assert scheduling_repository.count_active_jobs(mesh_id="mesh-a") == 2

    def test_cancel_pending_requires_scope(self, scheduling_repository):
        with pytest.raises(ValueError):
            scheduling_repository.cancel_pending_jobs("no scope")

    def test_list_jobs_filters(self, scheduling_repository):
        self._job(scheduling_repository, "node-1", remediation_execution_id="exec-1")
        self._job(scheduling_repository, "node-2", state=JobState.COMPLETE)

        assert len(scheduling_repository.list_jobs(execution_id="exec-1")) == 1
        assert len(scheduling_repository.list_jobs(states=[JobState.PENDING])) == 1
        assert len(scheduling_repository.list_jobs(node_id="node-2")) == 1

    def test_job_stats_include_every_state(self, scheduling_repository):
        stats = scheduling_repository.job_stats()

        assert set(stats) == {s.value for s in JobState} | {"total"}
        assert stats["total"] == 0
