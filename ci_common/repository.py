"""
Abstract repository interface for the CI job tree.

This module defines the contract that any database implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, MySQL, etc.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime

from .models import Build, RepositorySource, SubJob


class JobTreeRepository(ABC):
    """
    Abstract base class for job tree storage operations.

    The store holds registered repository sources, the sub-jobs of each
    owning job container, and the builds queued for those sub-jobs.
    Implementations must provide async-safe access and handle their own
    connection management.
    """

    # Repository sources

    @abstractmethod
    async def create_source(self, source: RepositorySource) -> None:
        """
        Register a repository source.

        Args:
            source: Source to persist

        Raises:
            Exception: If a source with the same ID already exists
        """
        pass

    @abstractmethod
    async def get_source(self, source_id: str) -> RepositorySource | None:
        """
        Retrieve a source by its ID.

        Returns:
            RepositorySource if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_sources(self) -> list[RepositorySource]:
        """List all registered sources."""
        pass

    @abstractmethod
    async def find_sources(self, owner: str, name: str) -> list[RepositorySource]:
        """
        Find the sources registered for a repository.

        Owner and name are compared case-insensitively.
        """
        pass

    @abstractmethod
    async def delete_source(self, source_id: str) -> bool:
        """
        Remove a source.

        Returns:
            True if a source was removed
        """
        pass

    # Sub-jobs

    @abstractmethod
    async def get_sub_job(self, owner: str, name: str) -> SubJob | None:
        """
        Retrieve the sub-job called name inside the owning job container.

        Returns:
            SubJob if it exists, None otherwise
        """
        pass

    @abstractmethod
    async def create_sub_job(self, sub_job: SubJob) -> None:
        """
        Create a sub-job.

        Raises:
            Exception: If the sub-job already exists
        """
        pass

    @abstractmethod
    async def list_sub_jobs(self, owner: str) -> list[SubJob]:
        """List the sub-jobs of an owning job container."""
        pass

    # Builds

    @abstractmethod
    async def enqueue_build(
        self, build: Build, superseded_ids: Sequence[str] = ()
    ) -> None:
        """
        Enqueue a build and supersede older ones in a single transaction.

        The build is inserted, its revision becomes the sub-job's last
        revision, and every build in superseded_ids is cancelled with
        superseded_by set to the new build. Either all of it is stored or
        none of it is.

        Args:
            build: New build; its sub-job must exist
            superseded_ids: Builds replaced by the new one

        Raises:
            Exception: If any write fails; the store is left unchanged
        """
        pass

    @abstractmethod
    async def get_build(self, build_id: str) -> Build | None:
        """
        Retrieve a build by its ID.

        Returns:
            Build if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_active_builds(self, owner: str, name: str) -> list[Build]:
        """List the queued and running builds of one sub-job, oldest first."""
        pass

    @abstractmethod
    async def list_builds(self, owner: str) -> list[Build]:
        """List every build of an owning job container, oldest first."""
        pass

    @abstractmethod
    async def update_build_status(
        self,
        build_id: str,
        status: str,
        start_time: datetime | None = None,
        superseded_by: str | None = None,
    ) -> None:
        """
        Update a build's status.

        Args:
            build_id: ID of the build to update
            status: New status ("queued", "running", "completed", "cancelled", "failed")
            start_time: Optional timestamp when the build started running
            superseded_by: Optional ID of the build that replaced this one
        """
        pass

    @abstractmethod
    async def complete_build(
        self, build_id: str, success: bool, end_time: datetime
    ) -> None:
        """Mark a build as completed with its final result."""
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the database (create tables, etc.).

        Called once at application startup.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Close database connections and cleanup resources.

        Called at application shutdown.
        """
        pass
