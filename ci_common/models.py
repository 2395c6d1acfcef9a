"""
Data models for the CI job tree and webhook-triggered builds.

These models represent the domain objects used throughout the application,
independent of the underlying storage mechanism.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

DEFAULT_API_URL = "https://api.github.com"


@dataclass(frozen=True)
class RepositoryRef:
    """
    Identifies a repository on a remote Git host.

    The numeric repository id is optional; when present it is preferred over
    the owner login for fork detection because logins change on transfers.
    """

    owner: str
    name: str
    api_url: str = DEFAULT_API_URL
    repository_id: int | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "name": self.name,
            "api_url": self.api_url,
            "repository_id": self.repository_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RepositoryRef":
        return cls(
            owner=data["owner"],
            name=data["name"],
            api_url=data.get("api_url") or DEFAULT_API_URL,
            repository_id=data.get("repository_id"),
        )


@dataclass(frozen=True)
class BranchHead:
    """A branch of the repository."""

    name: str


@dataclass(frozen=True)
class PullRequestHead:
    """
    One build variant of a pull request.

    A pull request yields up to two heads: the unmerged head commit and the
    head merged onto its base. The trust flag is decided once, when the head
    is constructed, and never recomputed.
    """

    number: int
    name: str
    merge: bool
    fork: bool
    trusted: bool
    # Informational; not part of the head identity
    source_owner: str | None = field(default=None, compare=False)
    source_repo: str | None = field(default=None, compare=False)
    source_branch: str | None = field(default=None, compare=False)
    target_branch: str | None = field(default=None, compare=False)


Head = BranchHead | PullRequestHead


@dataclass(frozen=True)
class BranchRevision:
    """A branch head pinned to a single commit."""

    head: BranchHead
    hash: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "branch", "branch": self.head.name, "hash": self.hash}


@dataclass(frozen=True)
class PullRequestRevision:
    """A pull request head pinned to its base and head commits."""

    head: PullRequestHead
    base_hash: str
    head_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "pull_request",
            "number": self.head.number,
            "name": self.head.name,
            "merge": self.head.merge,
            "fork": self.head.fork,
            "trusted": self.head.trusted,
            "source_owner": self.head.source_owner,
            "source_repo": self.head.source_repo,
            "source_branch": self.head.source_branch,
            "target_branch": self.head.target_branch,
            "base_hash": self.base_hash,
            "head_hash": self.head_hash,
        }


Revision = BranchRevision | PullRequestRevision


def revision_from_dict(data: dict[str, Any]) -> Revision:
    """Rebuild a revision from its to_dict() form."""
    if data["type"] == "branch":
        return BranchRevision(head=BranchHead(data["branch"]), hash=data["hash"])
    if data["type"] == "pull_request":
        head = PullRequestHead(
            number=data["number"],
            name=data["name"],
            merge=data["merge"],
            fork=data["fork"],
            trusted=data["trusted"],
            source_owner=data.get("source_owner"),
            source_repo=data.get("source_repo"),
            source_branch=data.get("source_branch"),
            target_branch=data.get("target_branch"),
        )
        return PullRequestRevision(
            head=head, base_hash=data["base_hash"], head_hash=data["head_hash"]
        )
    raise ValueError(f"Unknown revision type: {data['type']}")


@dataclass(frozen=True)
class PushEvent:
    """Minimal fields of a push delivery plus the raw payload."""

    ref: str
    sha: str
    payload: str
    deleted: bool = False


@dataclass(frozen=True)
class PullRequestEvent:
    """Minimal fields of a pull_request delivery plus the raw payload."""

    number: int
    base_sha: str
    head_sha: str
    head_owner: str | None
    payload: str
    action: str | None = None


Event = PushEvent | PullRequestEvent


@dataclass(frozen=True)
class BuildCause:
    """
    Records what triggered a build.

    Downstream consumers use the kind to tell webhook-triggered builds from
    manual ones.
    """

    kind: str  # "webhook" or "manual"
    description: str
    event: str | None = None  # "push" or "pull_request" for webhook builds
    delivery_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": self.kind, "description": self.description}
        if self.event is not None:
            result["event"] = self.event
        if self.delivery_id is not None:
            result["delivery_id"] = self.delivery_id
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuildCause":
        return cls(
            kind=data["kind"],
            description=data["description"],
            event=data.get("event"),
            delivery_id=data.get("delivery_id"),
        )


@dataclass
class SubJob:
    """
    A branch or pull request job inside an owning job container.

    Sub-jobs are created lazily the first time a build is scheduled for them.
    """

    owner: str
    name: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_revision: Revision | None = None  # Last revision a build was queued for


@dataclass
class Build:
    """
    A queued or executed build of one sub-job at one revision.

    Builds progress through states: queued -> running -> completed
    Additional states: cancelled, failed
    """

    id: str
    owner: str
    name: str
    revision: Revision
    cause: BuildCause
    status: str = "queued"  # "queued", "running", "completed", "cancelled", "failed"
    success: bool | None = None
    queued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    start_time: datetime | None = None
    end_time: datetime | None = None
    superseded_by: str | None = None  # Build that replaced this one

    ACTIVE_STATUSES = ("queued", "running")

    @property
    def is_active(self) -> bool:
        return self.status in self.ACTIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Convert build to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "owner": self.owner,
            "name": self.name,
            "status": self.status,
            "success": self.success,
            "revision": self.revision.to_dict(),
            "cause": self.cause.to_dict(),
            "queued_at": self.queued_at.isoformat(),
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "superseded_by": self.superseded_by,
        }

    def to_summary_dict(self) -> dict[str, Any]:
        """Convert build to summary format (for listings)."""
        return {
            "build_id": self.id,
            "name": self.name,
            "status": self.status,
            "success": self.success,
            "cause": self.cause.kind,
            "queued_at": self.queued_at.isoformat(),
        }


class PullRequestBuildMode(str, Enum):
    """Whether one pull request build variant is produced."""

    DISABLED = "disabled"
    TRUSTED = "trusted"  # Only for trusted pull requests
    ENABLED = "enabled"


class TrustPolicy(str, Enum):
    """Which fork pull requests are trusted."""

    NOBODY = "nobody"
    CONTRIBUTORS = "contributors"
    PERMISSION = "permission"
    EVERYONE = "everyone"


@dataclass(frozen=True)
class BuildPolicy:
    """
    Per origin class (origin or fork) and per mode (head or merge), which
    pull request variants get a job.
    """

    origin_head: PullRequestBuildMode = PullRequestBuildMode.ENABLED
    origin_merge: PullRequestBuildMode = PullRequestBuildMode.ENABLED
    fork_head: PullRequestBuildMode = PullRequestBuildMode.ENABLED
    fork_merge: PullRequestBuildMode = PullRequestBuildMode.TRUSTED

    def mode_for(self, merge: bool, fork: bool) -> PullRequestBuildMode:
        if fork:
            return self.fork_merge if merge else self.fork_head
        return self.origin_merge if merge else self.origin_head

    def to_dict(self) -> dict[str, str]:
        return {
            "origin_head": self.origin_head.value,
            "origin_merge": self.origin_merge.value,
            "fork_head": self.fork_head.value,
            "fork_merge": self.fork_merge.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "BuildPolicy":
        return cls(
            **{key: PullRequestBuildMode(value) for key, value in data.items()}
        )


@dataclass(frozen=True)
class BranchFilter:
    """Space separated wildcard patterns selecting the branches to build."""

    includes: str = "*"
    excludes: str = ""


@dataclass
class RepositorySource:
    """
    A registered repository and the policy for building it.

    owner_job names the owning job container that holds one sub-job per
    branch and pull request variant.
    """

    id: str
    owner_job: str
    repository: RepositoryRef
    branch_filter: BranchFilter = field(default_factory=BranchFilter)
    build_policy: BuildPolicy = field(default_factory=BuildPolicy)
    trust_policy: TrustPolicy = TrustPolicy.CONTRIBUTORS
    build_branches_with_pr: bool = True
    pr_name_prefix: str = "PR-"

    def to_dict(self) -> dict[str, Any]:
        """Convert source to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "owner_job": self.owner_job,
            "repository": self.repository.to_dict(),
            "includes": self.branch_filter.includes,
            "excludes": self.branch_filter.excludes,
            "build_policy": self.build_policy.to_dict(),
            "trust_policy": self.trust_policy.value,
            "build_branches_with_pr": self.build_branches_with_pr,
            "pr_name_prefix": self.pr_name_prefix,
        }
