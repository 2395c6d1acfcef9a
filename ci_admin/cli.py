"""
Admin CLI for managing registered repositories and inspecting builds.

Provides commands for registering repository sources, listing sub-jobs
and builds, and triggering or cancelling builds by hand.
"""

import asyncio
import json
import os
import re
import sys
import uuid
from pathlib import Path

import click

from ci_common.errors import ConfigurationError
from ci_common.models import (
    BranchFilter,
    BranchHead,
    BranchRevision,
    BuildCause,
    BuildPolicy,
    PullRequestBuildMode,
    RepositoryRef,
    RepositorySource,
    TrustPolicy,
)
from ci_persistence.sqlite_repository import SQLiteJobTreeRepository
from ci_webhooks.naming import NameAllocator
from ci_webhooks.scheduler import BuildScheduler

REPO_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
MODES = [mode.value for mode in PullRequestBuildMode]


def get_db_path() -> str:
    """Get the database path from environment variable or default."""
    return os.environ.get("CI_DB_PATH", str(Path.home() / ".ci" / "webhooks.db"))


def get_repository() -> SQLiteJobTreeRepository:
    """Get the repository instance."""
    db_path = Path(get_db_path())
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return SQLiteJobTreeRepository(str(db_path))


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


@click.group()
def cli():
    """CI Admin - Manage repository sources and builds for the webhook server."""
    pass


@cli.group()
def source():
    """Manage registered repositories."""
    pass


@cli.group()
def job():
    """Inspect sub-jobs."""
    pass


@cli.group()
def build():
    """Inspect and control builds."""
    pass


# ============================================================================
# Source Commands
# ============================================================================


@source.command("add")
@click.option("--owner-job", required=True, help="Owning job container name")
@click.option("--repo", "full_name", required=True, help="Repository as OWNER/NAME")
@click.option("--api-url", default="https://api.github.com", help="GitHub API URL")
@click.option("--repository-id", type=int, help="Numeric GitHub repository id")
@click.option("--includes", default="*", help="Branch patterns to build")
@click.option("--excludes", default="", help="Branch patterns to skip")
@click.option(
    "--trust",
    type=click.Choice([p.value for p in TrustPolicy]),
    default=TrustPolicy.CONTRIBUTORS.value,
    help="Which fork pull requests are trusted",
)
@click.option("--origin-head", type=click.Choice(MODES), default="enabled")
@click.option("--origin-merge", type=click.Choice(MODES), default="enabled")
@click.option("--fork-head", type=click.Choice(MODES), default="enabled")
@click.option("--fork-merge", type=click.Choice(MODES), default="trusted")
@click.option(
    "--skip-branches-with-pr",
    is_flag=True,
    help="Do not build branches that have an open pull request",
)
@click.option("--pr-prefix", default="PR-", help="Prefix of pull request job names")
def source_add(
    owner_job: str,
    full_name: str,
    api_url: str,
    repository_id: int | None,
    includes: str,
    excludes: str,
    trust: str,
    origin_head: str,
    origin_merge: str,
    fork_head: str,
    fork_merge: str,
    skip_branches_with_pr: bool,
    pr_prefix: str,
):
    """Register a repository."""
    if not REPO_PATTERN.match(full_name):
        click.echo(f"Error: Invalid repository, expected OWNER/NAME: {full_name}", err=True)
        sys.exit(1)

    repo_owner, repo_name = full_name.split("/", 1)
    policy = BuildPolicy(
        origin_head=PullRequestBuildMode(origin_head),
        origin_merge=PullRequestBuildMode(origin_merge),
        fork_head=PullRequestBuildMode(fork_head),
        fork_merge=PullRequestBuildMode(fork_merge),
    )

    try:
        NameAllocator(policy, pr_prefix)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    source_obj = RepositorySource(
        id=str(uuid.uuid4()),
        owner_job=owner_job,
        repository=RepositoryRef(
            owner=repo_owner,
            name=repo_name,
            api_url=api_url,
            repository_id=repository_id,
        ),
        branch_filter=BranchFilter(includes=includes, excludes=excludes),
        build_policy=policy,
        trust_policy=TrustPolicy(trust),
        build_branches_with_pr=not skip_branches_with_pr,
        pr_name_prefix=pr_prefix,
    )

    async def create():
        repo = get_repository()
        await repo.initialize()

        try:
            await repo.create_source(source_obj)

            click.echo("✓ Source registered successfully")
            click.echo(f"  ID:         {source_obj.id}")
            click.echo(f"  Owner job:  {source_obj.owner_job}")
            click.echo(f"  Repository: {source_obj.repository.full_name}")

        finally:
            await repo.close()

    run_async(create())


@source.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def source_list(json_output: bool):
    """List registered repositories."""

    async def list_sources():
        repo = get_repository()
        await repo.initialize()

        try:
            sources = await repo.list_sources()

            if json_output:
                click.echo(json.dumps([s.to_dict() for s in sources], indent=2))
                return

            if not sources:
                click.echo("No sources registered.")
                return

            click.echo(f"\n{'ID':<38} {'Owner job':<20} {'Repository':<30} {'Trust':<12}")
            click.echo("-" * 100)
            for s in sources:
                click.echo(
                    f"{s.id:<38} {s.owner_job:<20} "
                    f"{s.repository.full_name:<30} {s.trust_policy.value:<12}"
                )
            click.echo()

        finally:
            await repo.close()

    run_async(list_sources())


@source.command("remove")
@click.argument("source_id")
def source_remove(source_id: str):
    """Unregister a repository."""

    async def remove():
        repo = get_repository()
        await repo.initialize()

        try:
            if not await repo.delete_source(source_id):
                click.echo(f"Error: Source not found: {source_id}", err=True)
                sys.exit(1)

            click.echo(f"✓ Source removed: {source_id}")

        finally:
            await repo.close()

    run_async(remove())


# ============================================================================
# Job Commands
# ============================================================================


@job.command("list")
@click.argument("owner_job")
def job_list(owner_job: str):
    """List the sub-jobs of an owning job container."""

    async def list_jobs():
        repo = get_repository()
        await repo.initialize()

        try:
            sub_jobs = await repo.list_sub_jobs(owner_job)
            if not sub_jobs:
                click.echo(f"No jobs in {owner_job}.")
                return

            for sub_job in sub_jobs:
                revision = (
                    json.dumps(sub_job.last_revision.to_dict())
                    if sub_job.last_revision
                    else "-"
                )
                click.echo(f"{sub_job.name:<30} {revision}")

        finally:
            await repo.close()

    run_async(list_jobs())


# ============================================================================
# Build Commands
# ============================================================================


@build.command("list")
@click.argument("owner_job")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def build_list(owner_job: str, json_output: bool):
    """List the builds of an owning job container."""

    async def list_builds():
        repo = get_repository()
        await repo.initialize()

        try:
            builds = await repo.list_builds(owner_job)

            if json_output:
                click.echo(json.dumps([b.to_dict() for b in builds], indent=2))
                return

            if not builds:
                click.echo(f"No builds in {owner_job}.")
                return

            click.echo(f"\n{'ID':<38} {'Job':<24} {'Status':<10} {'Cause':<10}")
            click.echo("-" * 86)
            for b in builds:
                click.echo(f"{b.id:<38} {b.name:<24} {b.status:<10} {b.cause.kind:<10}")
            click.echo()

        finally:
            await repo.close()

    run_async(list_builds())


@build.command("trigger")
@click.argument("owner_job")
@click.argument("branch")
@click.argument("sha")
def build_trigger(owner_job: str, branch: str, sha: str):
    """Manually schedule a branch build at SHA."""

    async def trigger():
        repo = get_repository()
        await repo.initialize()

        try:
            scheduler = BuildScheduler(repo)
            revision = BranchRevision(head=BranchHead(branch), hash=sha)
            prefixes = [
                s.pr_name_prefix
                for s in await repo.list_sources()
                if s.owner_job == owner_job
            ]
            names = NameAllocator(BuildPolicy(), prefixes[0] if prefixes else "PR-")
            name = names.name_for_branch(branch)
            user = os.environ.get("USER", "admin")
            cause = BuildCause(kind="manual", description=f"Triggered by {user}")

            active = await repo.list_active_builds(owner_job, name)
            if any(b.revision == revision for b in active):
                click.echo(f"Build already queued for {owner_job}/{name} at {sha}")
                return

            if not await scheduler.schedule(owner_job, revision, name, cause):
                click.echo(f"Error: Could not schedule {owner_job}/{name}", err=True)
                sys.exit(1)

            click.echo(f"✓ Build scheduled for {owner_job}/{name} at {sha}")

        finally:
            await repo.close()

    run_async(trigger())


@build.command("cancel")
@click.argument("build_id")
def build_cancel(build_id: str):
    """Cancel a queued or running build."""

    async def cancel():
        repo = get_repository()
        await repo.initialize()

        try:
            build_obj = await repo.get_build(build_id)
            if not build_obj:
                click.echo(f"Error: Build not found: {build_id}", err=True)
                sys.exit(1)

            if not build_obj.is_active:
                click.echo(
                    f"Error: Build {build_id} is already {build_obj.status}", err=True
                )
                sys.exit(1)

            await repo.update_build_status(build_id, "cancelled")
            click.echo(f"✓ Build cancelled: {build_id}")

        finally:
            await repo.close()

    run_async(cancel())


if __name__ == "__main__":
    cli()
