"""Tests for JobLogger: lifecycle, patch guard, sealing, invariants, stats."""
from datetime import datetime

import pytest

from activity_sync.errors import ForbiddenPatchError, JobSealedError
from activity_sync.models.sync import JobStatus, TriggeredBy
from activity_sync.sync.job_logger import JobLogger


@pytest.fixture
def jobs(engine):
    return JobLogger(engine)


class TestLifecycle:
    def test_start_creates_running_row(self, jobs):
        job = jobs.start("STEAM", credential_id=None, triggered_by=TriggeredBy.AUTO)
        assert job.id is not None
        assert job.status == JobStatus.RUNNING
        assert job.triggered_by == TriggeredBy.AUTO
        assert job.completed_at is None

    def test_counters_then_finish(self, jobs):
        job = jobs.start("STEAM", None)
        jobs.update_status(job.id, items_total=10, items_success=7, items_failed=3)
        done = jobs.update_status(job.id, status=JobStatus.PARTIAL, message="7/10")
        assert done.status == JobStatus.PARTIAL
        assert done.completed_at is not None
        assert done.items_total == 10

    def test_status_string_is_coerced(self, jobs):
        job = jobs.start("GITHUB", None)
        assert jobs.update_status(job.id, status="SUCCESS").status == JobStatus.SUCCESS

    def test_sealed_after_terminal(self, jobs):
        job = jobs.start("STEAM", None)
        jobs.update_status(job.id, status=JobStatus.FAILED)
        with pytest.raises(JobSealedError):
            jobs.update_status(job.id, message="too late")

    def test_unknown_job(self, jobs):
        with pytest.raises(LookupError):
            jobs.update_status(999, message="x")


class TestGuards:
    @pytest.mark.parametrize("field", ["platform", "credential_id", "started_at", "triggered_by", "id"])
    def test_forbidden_fields(self, jobs, field):
        job = jobs.start("STEAM", None)
        with pytest.raises(ForbiddenPatchError):
            jobs.update_status(job.id, **{field: None})

    def test_success_plus_failed_cannot_exceed_total(self, jobs):
        job = jobs.start("STEAM", None)
        with pytest.raises(ValueError):
            jobs.update_status(job.id, items_total=5, items_success=4, items_failed=2)

    def test_negative_counter(self, jobs):
        job = jobs.start("STEAM", None)
        with pytest.raises(ValueError):
            jobs.update_status(job.id, items_new=-1)

    def test_completed_at_without_terminal_status(self, jobs):
        job = jobs.start("STEAM", None)
        with pytest.raises(ValueError):
            jobs.update_status(job.id, completed_at=datetime.utcnow())

    def test_rejected_patch_leaves_row_untouched(self, jobs):
        job = jobs.start("STEAM", None)
        with pytest.raises(ValueError):
            jobs.update_status(job.id, items_total=1, items_success=2)
        assert jobs.get(job.id).items_total == 0


class TestReads:
    def test_recent_newest_first_and_filters(self, jobs):
        a = jobs.start("STEAM", None)
        b = jobs.start("GITHUB", None)
        c = jobs.start("STEAM", None)
        assert [j.id for j in jobs.recent()] == [c.id, b.id, a.id]
        assert [j.id for j in jobs.recent(platform="STEAM")] == [c.id, a.id]
        assert jobs.latest_for_platform("GITHUB").id == b.id
        assert jobs.latest_for_platform("DOUBAN") is None

    def test_stats(self, jobs):
        ok = jobs.start("STEAM", None, TriggeredBy.MANUAL)
        jobs.update_status(ok.id, status=JobStatus.SUCCESS, items_total=4, items_success=4, items_new=3,
                           duration=100)
        bad = jobs.start("STEAM", None, TriggeredBy.AUTO)
        jobs.update_status(bad.id, status=JobStatus.FAILED, duration=300)
        jobs.start("GITHUB", None, TriggeredBy.AUTO)

        stats = jobs.stats()
        assert stats["total_syncs"] == 3
        assert stats["successful_syncs"] == 1
        assert stats["failed_syncs"] == 1
        assert stats["manual_syncs"] == 1
        assert stats["auto_syncs"] == 2
        assert stats["success_rate"] == pytest.approx(100 / 3)
        assert stats["avg_duration_ms"] == 200.0
        assert stats["total_items_synced"] == 4
        assert stats["total_new_items"] == 3

    def test_stats_empty(self, jobs):
        assert jobs.stats()["success_rate"] == 0.0
