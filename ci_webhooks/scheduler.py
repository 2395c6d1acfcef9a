"""
Idempotent build scheduling against the job tree store.

At most one active build exists per (owner, name, revision). A newer
revision for the same name supersedes builds that have not started yet.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from ci_common.models import Build, BuildCause, Revision, SubJob
from ci_common.repository import JobTreeRepository

logger = logging.getLogger(__name__)


class BuildScheduler:
    """
    Enqueues builds, reusing equivalent ones and replacing stale ones.

    The dedup/supersede read-modify-write is serialized per (owner, name)
    with an asyncio lock, so concurrent deliveries for the same sub-job
    cannot both enqueue. A lock is discarded once nobody holds or waits
    for it.
    """

    def __init__(self, repository: JobTreeRepository, cancel_running: bool = False):
        """
        Initialize the scheduler.

        Args:
            repository: Job tree store holding sub-jobs and builds
            cancel_running: Also cancel running builds of an older revision.
                By default only queued builds are superseded and running
                builds are left to finish.
        """
        self.repository = repository
        self.cancel_running = cancel_running
        # (owner, name) -> [lock, number of holders and waiters]
        self._locks: dict[tuple[str, str], list] = {}

    @asynccontextmanager
    async def _locked(self, owner: str, name: str):
        key = (owner, name)
        entry = self._locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    async def schedule(
        self, owner: str, revision: Revision, name: str, cause: BuildCause
    ) -> bool:
        """
        Ensure a build of name at revision is queued or in flight.

        Webhook causes are also deduplicated against the last revision the
        sub-job was built at, so a redelivered event does not rebuild. Other
        causes (a manual trigger) only reuse a build that is still active.

        Args:
            owner: Owning job container
            revision: Revision to build
            name: Sub-job name
            cause: What triggered the build

        Returns:
            True if a build was enqueued or an equivalent one already exists,
            False if the store rejected the request
        """
        async with self._locked(owner, name):
            try:
                return await self._schedule_locked(owner, revision, name, cause)
            except Exception as e:
                logger.error(
                    f"Failed to schedule {owner}/{name} at {revision}: {e}",
                    exc_info=True,
                )
                return False

    async def _schedule_locked(
        self, owner: str, revision: Revision, name: str, cause: BuildCause
    ) -> bool:
        sub_job = await self.repository.get_sub_job(owner, name)
        if sub_job is None:
            logger.info(f"Creating sub-job {owner}/{name}")
            sub_job = SubJob(owner=owner, name=name)
            await self.repository.create_sub_job(sub_job)

        active = await self.repository.list_active_builds(owner, name)
        for build in active:
            if build.revision == revision:
                logger.debug(f"Build {build.id} already targets {owner}/{name}")
                return True

        if cause.kind == "webhook" and sub_job.last_revision == revision:
            logger.debug(f"{owner}/{name} already built at this revision")
            return True

        build = Build(
            id=str(uuid.uuid4()),
            owner=owner,
            name=name,
            revision=revision,
            cause=cause,
            queued_at=datetime.now(UTC),
        )
        stale = [b.id for b in active if b.status == "queued" or self.cancel_running]

        await self.repository.enqueue_build(build, stale)

        for old_id in stale:
            logger.info(f"Build {old_id} of {owner}/{name} superseded by {build.id}")
        logger.info(f"Scheduled build {build.id} of {owner}/{name}: {cause.description}")
        return True
