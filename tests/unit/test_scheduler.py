"""
Unit tests for BuildScheduler.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from webhook_helpers import SHA_A, SHA_B

from ci_common.models import BranchHead, BranchRevision, BuildCause
from ci_webhooks.scheduler import BuildScheduler

OWNER = "widgets"


def revision(sha: str, branch: str = "main") -> BranchRevision:
    return BranchRevision(head=BranchHead(branch), hash=sha)


def cause(description: str = "Push to main") -> BuildCause:
    return BuildCause(kind="webhook", description=description, event="push")


class TestBuildScheduler:
    """Test suite for scheduling, dedup and supersession."""

    @pytest.mark.asyncio
    async def test_creates_sub_job_lazily(self, temp_db):
        """The first schedule for a name creates its sub-job."""
        scheduler = BuildScheduler(temp_db)

        assert await temp_db.get_sub_job(OWNER, "main") is None
        assert await scheduler.schedule(OWNER, revision(SHA_A), "main", cause())

        sub_job = await temp_db.get_sub_job(OWNER, "main")
        assert sub_job is not None
        assert sub_job.last_revision == revision(SHA_A)

    @pytest.mark.asyncio
    async def test_stores_cause(self, temp_db):
        scheduler = BuildScheduler(temp_db)
        build_cause = BuildCause(
            kind="webhook", description="Push to main", event="push", delivery_id="d-1"
        )

        await scheduler.schedule(OWNER, revision(SHA_A), "main", build_cause)

        (build,) = await temp_db.list_builds(OWNER)
        assert build.cause == build_cause
        assert build.status == "queued"

    @pytest.mark.asyncio
    async def test_same_revision_is_idempotent(self, temp_db):
        """Scheduling the same revision twice leaves a single build."""
        scheduler = BuildScheduler(temp_db)

        assert await scheduler.schedule(OWNER, revision(SHA_A), "main", cause())
        assert await scheduler.schedule(OWNER, revision(SHA_A), "main", cause())

        assert len(await temp_db.list_builds(OWNER)) == 1

    @pytest.mark.asyncio
    async def test_redelivery_after_completion_does_not_rebuild(self, temp_db):
        """A revision already built for the name is not queued again."""
        scheduler = BuildScheduler(temp_db)
        await scheduler.schedule(OWNER, revision(SHA_A), "main", cause())
        (build,) = await temp_db.list_builds(OWNER)
        await temp_db.update_build_status(build.id, "running")
        await temp_db.complete_build(build.id, True, build.queued_at)

        assert await scheduler.schedule(OWNER, revision(SHA_A), "main", cause())

        assert len(await temp_db.list_builds(OWNER)) == 1

    @pytest.mark.asyncio
    async def test_newer_revision_supersedes_queued_build(self, temp_db):
        """Only one active build remains and it targets the newer commit."""
        scheduler = BuildScheduler(temp_db)

        await scheduler.schedule(OWNER, revision(SHA_A), "main", cause())
        await scheduler.schedule(OWNER, revision(SHA_B), "main", cause())

        active = await temp_db.list_active_builds(OWNER, "main")
        assert [b.revision for b in active] == [revision(SHA_B)]

        old = [b for b in await temp_db.list_builds(OWNER) if b.revision == revision(SHA_A)]
        assert old[0].status == "cancelled"
        assert old[0].superseded_by == active[0].id

    @pytest.mark.asyncio
    async def test_running_build_is_kept_by_default(self, temp_db):
        scheduler = BuildScheduler(temp_db)
        await scheduler.schedule(OWNER, revision(SHA_A), "main", cause())
        (running,) = await temp_db.list_builds(OWNER)
        await temp_db.update_build_status(running.id, "running")

        await scheduler.schedule(OWNER, revision(SHA_B), "main", cause())

        active = await temp_db.list_active_builds(OWNER, "main")
        assert {b.status for b in active} == {"running", "queued"}

    @pytest.mark.asyncio
    async def test_running_build_is_cancelled_when_configured(self, temp_db):
        scheduler = BuildScheduler(temp_db, cancel_running=True)
        await scheduler.schedule(OWNER, revision(SHA_A), "main", cause())
        (running,) = await temp_db.list_builds(OWNER)
        await temp_db.update_build_status(running.id, "running")

        await scheduler.schedule(OWNER, revision(SHA_B), "main", cause())

        active = await temp_db.list_active_builds(OWNER, "main")
        assert [b.revision for b in active] == [revision(SHA_B)]
        cancelled = await temp_db.get_build(running.id)
        assert cancelled.status == "cancelled"

    @pytest.mark.asyncio
    async def test_names_are_independent(self, temp_db):
        """A build of one sub-job never supersedes another sub-job."""
        scheduler = BuildScheduler(temp_db)

        await scheduler.schedule(OWNER, revision(SHA_A), "main", cause())
        await scheduler.schedule(OWNER, revision(SHA_B, "dev"), "dev", cause())

        assert len(await temp_db.list_active_builds(OWNER, "main")) == 1
        assert len(await temp_db.list_active_builds(OWNER, "dev")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_enqueue_once(self, temp_db):
        scheduler = BuildScheduler(temp_db)

        results = await asyncio.gather(
            *(scheduler.schedule(OWNER, revision(SHA_A), "main", cause()) for _ in range(5))
        )

        assert all(results)
        assert len(await temp_db.list_builds(OWNER)) == 1

    @pytest.mark.asyncio
    async def test_failed_supersession_leaves_queue_unchanged(self, temp_db):
        """A write failure after the insert rolls the whole enqueue back."""
        scheduler = BuildScheduler(temp_db)
        await scheduler.schedule(OWNER, revision(SHA_A), "main", cause())
        temp_db._supersede = AsyncMock(side_effect=RuntimeError("disk full"))

        assert await scheduler.schedule(OWNER, revision(SHA_B), "main", cause()) is False

        active = await temp_db.list_active_builds(OWNER, "main")
        assert [b.revision for b in active] == [revision(SHA_A)]
        sub_job = await temp_db.get_sub_job(OWNER, "main")
        assert sub_job.last_revision == revision(SHA_A)

    @pytest.mark.asyncio
    async def test_manual_cause_rebuilds_last_revision(self, temp_db):
        """A manual trigger rebuilds a commit whose build already finished."""
        scheduler = BuildScheduler(temp_db)
        await scheduler.schedule(OWNER, revision(SHA_A), "main", cause())
        (first,) = await temp_db.list_builds(OWNER)
        await temp_db.complete_build(first.id, False, first.queued_at)
        manual = BuildCause(kind="manual", description="Triggered by admin")

        assert await scheduler.schedule(OWNER, revision(SHA_A), "main", manual)

        builds = await temp_db.list_builds(OWNER)
        assert [b.cause.kind for b in builds] == ["webhook", "manual"]

    @pytest.mark.asyncio
    async def test_manual_cause_reuses_active_build(self, temp_db):
        scheduler = BuildScheduler(temp_db)
        manual = BuildCause(kind="manual", description="Triggered by admin")

        await scheduler.schedule(OWNER, revision(SHA_A), "main", manual)
        await scheduler.schedule(OWNER, revision(SHA_A), "main", manual)

        assert len(await temp_db.list_builds(OWNER)) == 1

    @pytest.mark.asyncio
    async def test_locks_are_released_after_use(self, temp_db):
        """No per-name lock outlives the schedule calls that needed it."""
        scheduler = BuildScheduler(temp_db)

        await asyncio.gather(
            *(
                scheduler.schedule(OWNER, revision(SHA_A, f"b{i}"), f"b{i}", cause())
                for i in range(3)
            ),
            scheduler.schedule(OWNER, revision(SHA_A), "main", cause()),
            scheduler.schedule(OWNER, revision(SHA_B), "main", cause()),
        )

        assert scheduler._locks == {}

    @pytest.mark.asyncio
    async def test_store_failure_returns_false(self):
        """Store errors are logged and reported as not scheduled."""
        repository = AsyncMock()
        repository.get_sub_job.side_effect = RuntimeError("disk full")
        scheduler = BuildScheduler(repository)

        assert await scheduler.schedule(OWNER, revision(SHA_A), "main", cause()) is False
        repository.enqueue_build.assert_not_called()
