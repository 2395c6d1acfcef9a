"""
SQLite implementation of the job tree repository.

Uses aiosqlite for async operations.
Can be easily replaced with PostgreSQL/MySQL implementations.
"""

import asyncio
import json
from collections.abc import Sequence
from datetime import datetime

import aiosqlite

from ci_common.models import (
    BranchFilter,
    Build,
    BuildCause,
    BuildPolicy,
    RepositoryRef,
    RepositorySource,
    SubJob,
    TrustPolicy,
    revision_from_dict,
)
from ci_common.repository import JobTreeRepository

_BUILD_COLUMNS = (
    "id, owner, name, revision, cause, status, success, "
    "queued_at, start_time, end_time, superseded_by"
)

_SOURCE_COLUMNS = (
    "id, owner_job, repository, includes, excludes, build_policy, "
    "trust_policy, build_branches_with_pr, pr_name_prefix"
)


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteJobTreeRepository(JobTreeRepository):
    """
    SQLite-based job tree storage implementation.

    Uses a single database file with multiple tables:
    - sources: Registered repositories and their build policy
    - sub_jobs: Branch and pull request jobs per owning job container
    - builds: Queued and executed builds with foreign key to sub_jobs
    """

    def __init__(self, db_path: str = "ci_webhooks.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        # Writes share one connection, so a transaction must not interleave
        self._write_lock = asyncio.Lock()

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            # Enable foreign key constraints
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    async def _write(self, sql: str, params: Sequence = ()) -> aiosqlite.Cursor:
        """Execute one statement and commit it."""
        conn = await self._get_connection()
        async with self._write_lock:
            try:
                cursor = await conn.execute(sql, params)
            except Exception:
                await conn.rollback()
                raise
            await conn.commit()
        return cursor

    async def initialize(self) -> None:
        """
        Create database tables if they don't exist.

        Schema:
        - sources table: one row per registered repository source
        - sub_jobs table: keyed by (owner, name), holds the last known revision
        - builds table: build queue and history, JSON revision and cause
        """
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS sources (
                id TEXT PRIMARY KEY,
                owner_job TEXT NOT NULL,
                repository TEXT NOT NULL,
                repo_owner TEXT NOT NULL,
                repo_name TEXT NOT NULL,
                includes TEXT NOT NULL,
                excludes TEXT NOT NULL,
                build_policy TEXT NOT NULL,
                trust_policy TEXT NOT NULL,
                build_branches_with_pr INTEGER NOT NULL DEFAULT 1,
                pr_name_prefix TEXT NOT NULL
            )
        """)

        # Webhook lookups go by repository full name
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sources_repo
            ON sources(repo_owner, repo_name)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS sub_jobs (
                owner TEXT NOT NULL,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                last_revision TEXT,
                PRIMARY KEY (owner, name)
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS builds (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                name TEXT NOT NULL,
                revision TEXT NOT NULL,
                cause TEXT NOT NULL,
                status TEXT NOT NULL,
                success INTEGER,
                queued_at TEXT NOT NULL,
                start_time TEXT,
                end_time TEXT,
                superseded_by TEXT,
                FOREIGN KEY (owner, name) REFERENCES sub_jobs(owner, name)
                    ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_builds_owner_name
            ON builds(owner, name)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def create_source(self, source: RepositorySource) -> None:
        await self._write(
            """
            INSERT INTO sources (id, owner_job, repository, repo_owner, repo_name,
                                 includes, excludes, build_policy, trust_policy,
                                 build_branches_with_pr, pr_name_prefix)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                source.id,
                source.owner_job,
                json.dumps(source.repository.to_dict()),
                source.repository.owner.lower(),
                source.repository.name.lower(),
                source.branch_filter.includes,
                source.branch_filter.excludes,
                json.dumps(source.build_policy.to_dict()),
                source.trust_policy.value,
                1 if source.build_branches_with_pr else 0,
                source.pr_name_prefix,
            ),
        )

    def _row_to_source(self, row: tuple) -> RepositorySource:
        (
            source_id,
            owner_job,
            repository,
            includes,
            excludes,
            build_policy,
            trust_policy,
            build_branches_with_pr,
            pr_name_prefix,
        ) = row
        return RepositorySource(
            id=source_id,
            owner_job=owner_job,
            repository=RepositoryRef.from_dict(json.loads(repository)),
            branch_filter=BranchFilter(includes=includes, excludes=excludes),
            build_policy=BuildPolicy.from_dict(json.loads(build_policy)),
            trust_policy=TrustPolicy(trust_policy),
            build_branches_with_pr=bool(build_branches_with_pr),
            pr_name_prefix=pr_name_prefix,
        )

    async def get_source(self, source_id: str) -> RepositorySource | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?", (source_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_source(row) if row else None

    async def list_sources(self) -> list[RepositorySource]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources ORDER BY owner_job"
        )
        rows = await cursor.fetchall()
        return [self._row_to_source(row) for row in rows]

    async def find_sources(self, owner: str, name: str) -> list[RepositorySource]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources "
            "WHERE repo_owner = ? AND repo_name = ? ORDER BY owner_job",
            (owner.lower(), name.lower()),
        )
        rows = await cursor.fetchall()
        return [self._row_to_source(row) for row in rows]

    async def delete_source(self, source_id: str) -> bool:
        cursor = await self._write("DELETE FROM sources WHERE id = ?", (source_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Sub-jobs
    # ------------------------------------------------------------------

    async def get_sub_job(self, owner: str, name: str) -> SubJob | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT owner, name, created_at, last_revision FROM sub_jobs "
            "WHERE owner = ? AND name = ?",
            (owner, name),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        owner, name, created_at, last_revision = row
        return SubJob(
            owner=owner,
            name=name,
            created_at=datetime.fromisoformat(created_at),
            last_revision=revision_from_dict(json.loads(last_revision))
            if last_revision
            else None,
        )

    async def create_sub_job(self, sub_job: SubJob) -> None:
        await self._write(
            """
            INSERT INTO sub_jobs (owner, name, created_at, last_revision)
            VALUES (?, ?, ?, ?)
            """,
            (
                sub_job.owner,
                sub_job.name,
                sub_job.created_at.isoformat(),
                json.dumps(sub_job.last_revision.to_dict())
                if sub_job.last_revision
                else None,
            ),
        )

    async def list_sub_jobs(self, owner: str) -> list[SubJob]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT name FROM sub_jobs WHERE owner = ? ORDER BY name", (owner,)
        )
        rows = await cursor.fetchall()

        sub_jobs = []
        for (name,) in rows:
            sub_job = await self.get_sub_job(owner, name)
            if sub_job is not None:
                sub_jobs.append(sub_job)
        return sub_jobs

    # ------------------------------------------------------------------
    # Builds
    # ------------------------------------------------------------------

    async def enqueue_build(
        self, build: Build, superseded_ids: Sequence[str] = ()
    ) -> None:
        conn = await self._get_connection()

        async with self._write_lock:
            # One transaction: insert, last revision, supersession
            try:
                await self._insert_build(conn, build)
                await self._set_last_revision(conn, build)
                await self._supersede(conn, superseded_ids, build.id)
            except Exception:
                await conn.rollback()
                raise
            await conn.commit()

    async def _insert_build(self, conn: aiosqlite.Connection, build: Build) -> None:
        await conn.execute(
            f"""
            INSERT INTO builds ({_BUILD_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                build.id,
                build.owner,
                build.name,
                json.dumps(build.revision.to_dict()),
                json.dumps(build.cause.to_dict()),
                build.status,
                None if build.success is None else (1 if build.success else 0),
                build.queued_at.isoformat(),
                build.start_time.isoformat() if build.start_time else None,
                build.end_time.isoformat() if build.end_time else None,
                build.superseded_by,
            ),
        )

    async def _set_last_revision(self, conn: aiosqlite.Connection, build: Build) -> None:
        cursor = await conn.execute(
            "UPDATE sub_jobs SET last_revision = ? WHERE owner = ? AND name = ?",
            (json.dumps(build.revision.to_dict()), build.owner, build.name),
        )
        if cursor.rowcount == 0:
            raise LookupError(f"Sub-job {build.owner}/{build.name} does not exist")

    async def _supersede(
        self, conn: aiosqlite.Connection, superseded_ids: Sequence[str], build_id: str
    ) -> None:
        for old_id in superseded_ids:
            await conn.execute(
                "UPDATE builds SET status = 'cancelled', superseded_by = ? WHERE id = ?",
                (build_id, old_id),
            )

    def _row_to_build(self, row: tuple) -> Build:
        (
            build_id,
            owner,
            name,
            revision,
            cause,
            status,
            success,
            queued_at,
            start_time,
            end_time,
            superseded_by,
        ) = row
        return Build(
            id=build_id,
            owner=owner,
            name=name,
            revision=revision_from_dict(json.loads(revision)),
            cause=BuildCause.from_dict(json.loads(cause)),
            status=status,
            success=bool(success) if success is not None else None,
            queued_at=datetime.fromisoformat(queued_at),
            start_time=_parse_time(start_time),
            end_time=_parse_time(end_time),
            superseded_by=superseded_by,
        )

    async def get_build(self, build_id: str) -> Build | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_BUILD_COLUMNS} FROM builds WHERE id = ?", (build_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_build(row) if row else None

    async def list_active_builds(self, owner: str, name: str) -> list[Build]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_BUILD_COLUMNS} FROM builds "
            "WHERE owner = ? AND name = ? AND status IN ('queued', 'running') "
            "ORDER BY queued_at, rowid",
            (owner, name),
        )
        rows = await cursor.fetchall()
        return [self._row_to_build(row) for row in rows]

    async def list_builds(self, owner: str) -> list[Build]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_BUILD_COLUMNS} FROM builds WHERE owner = ? "
            "ORDER BY queued_at, rowid",
            (owner,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_build(row) for row in rows]

    async def update_build_status(
        self,
        build_id: str,
        status: str,
        start_time: datetime | None = None,
        superseded_by: str | None = None,
    ) -> None:
        # Build dynamic SQL based on what's being updated
        updates = ["status = ?"]
        params = [status]

        if start_time is not None:
            updates.append("start_time = ?")
            params.append(start_time.isoformat())

        if superseded_by is not None:
            updates.append("superseded_by = ?")
            params.append(superseded_by)

        params.append(build_id)  # WHERE clause parameter

        sql = f"UPDATE builds SET {', '.join(updates)} WHERE id = ?"
        await self._write(sql, params)

    async def complete_build(
        self, build_id: str, success: bool, end_time: datetime
    ) -> None:
        await self._write(
            "UPDATE builds SET status = ?, success = ?, end_time = ? WHERE id = ?",
            ("completed", 1 if success else 0, end_time.isoformat(), build_id),
        )
