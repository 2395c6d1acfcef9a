"""
Webhook event handlers.

Each handler turns one delivery into zero or more (name, revision) pairs and
hands them to the BuildScheduler. Handlers never raise for remote failures
or policy exclusions; they log and return False so the transport can
acknowledge the delivery.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from ci_client.github import GitHubClient, RemoteAPIError
from ci_common.errors import ConfigurationError, UnsupportedEventError
from ci_common.models import (
    BuildCause,
    PullRequestHead,
    PullRequestRevision,
    RepositorySource,
)

from .naming import NameAllocator
from .resolver import RevisionResolver
from .scheduler import BuildScheduler
from .trust import TrustEvaluator, is_fork

logger = logging.getLogger(__name__)

BRANCH_REF_PREFIX = "refs/heads/"

# Closed set of pull request variants: unmerged head first, then merge
MERGE_MODES = (False, True)


def webhook_cause(
    event: str, description: str, delivery_id: str | None = None
) -> BuildCause:
    return BuildCause(
        kind="webhook", description=description, event=event, delivery_id=delivery_id
    )


class EventHandler(ABC):
    """
    Handles one kind of webhook event.

    Implementations share the client and scheduler; everything derived from
    the repository source is built per call so no policy decision outlives
    the delivery.
    """

    event_kind: str

    def __init__(self, client: GitHubClient, scheduler: BuildScheduler):
        self.client = client
        self.scheduler = scheduler

    @abstractmethod
    async def handle(
        self,
        payload: str,
        data: dict[str, Any],
        owner: str,
        source: RepositorySource,
        delivery_id: str | None = None,
    ) -> bool:
        """
        Process one delivery.

        Args:
            payload: Raw request body
            data: Parsed JSON body
            owner: Owning job container
            source: Registered repository source the delivery is for
            delivery_id: Optional transport delivery identifier

        Returns:
            True if at least one build was scheduled
        """
        pass


class PushHandler(EventHandler):
    """Schedules a branch build for each push to refs/heads/*."""

    event_kind = "push"

    async def handle(
        self,
        payload: str,
        data: dict[str, Any],
        owner: str,
        source: RepositorySource,
        delivery_id: str | None = None,
    ) -> bool:
        repository = source.repository
        logger.debug(f"Push delivery for {repository.full_name} into {owner}")

        try:
            push = await asyncio.to_thread(self.client.get_push, payload)
        except RemoteAPIError as e:
            logger.error(f"Error reading push event for {repository.full_name}: {e}")
            return False

        if not push.ref.startswith(BRANCH_REF_PREFIX):
            logger.info(f"Ignoring push to {push.ref}: not a branch")
            return False

        branch = push.ref[len(BRANCH_REF_PREFIX):]
        if push.deleted:
            logger.info(f"Ignoring deletion of branch {branch}")
            return False

        resolver = RevisionResolver(
            self.client, source.branch_filter, source.build_branches_with_pr
        )
        excluded: set[str] = set()
        try:
            revision = await asyncio.to_thread(
                resolver.for_branch, branch, push.sha, repository, excluded, logger
            )
        except RemoteAPIError as e:
            logger.error(f"Error resolving branch {branch} of {repository.full_name}: {e}")
            return False

        if revision is None:
            logger.info(f"Skipping branch {branch} -> {push.sha}")
            return False

        try:
            names = NameAllocator(source.build_policy, source.pr_name_prefix)
        except ConfigurationError as e:
            logger.error(f"Invalid configuration for {repository.full_name}: {e}")
            return False

        name = names.name_for_branch(branch)
        logger.debug(f"About to schedule build: {owner} {revision} {name}")
        cause = webhook_cause(
            "push", f"Push to {branch} at {push.sha[:12]}", delivery_id
        )
        return await self.scheduler.schedule(owner, revision, name, cause)


class PullRequestHandler(EventHandler):
    """
    Schedules the unmerged and merge variants of a pull request.

    Closed pull requests are skipped, whether the delivery says so or the
    API reports the pull request closed by the time it is fetched.
    """

    event_kind = "pull_request"

    ignored_actions = frozenset({"closed"})

    async def handle(
        self,
        payload: str,
        data: dict[str, Any],
        owner: str,
        source: RepositorySource,
        delivery_id: str | None = None,
    ) -> bool:
        ref = source.repository
        action = data.get("action")
        if action in self.ignored_actions:
            logger.info(f"Ignoring pull request action {action} on {ref.full_name}")
            return False

        trust = TrustEvaluator(self.client, source.trust_policy)
        try:
            pull = await asyncio.to_thread(self.client.get_pull_request, ref, payload)
            logger.info(f"Got PR object from event payload: {pull.number}")
            if pull.state == "closed":
                logger.info(f"Ignoring closed pull request #{pull.number} on {ref.full_name}")
                return False
            repository = await asyncio.to_thread(self.client.get_repository, ref)
            fork = is_fork(ref, pull, repository)
            trusted = await asyncio.to_thread(trust.is_trusted, ref, pull, repository)
        except RemoteAPIError as e:
            logger.error(f"Error during pull request update for {ref.full_name}: {e}")
            return False

        try:
            names = NameAllocator(source.build_policy, source.pr_name_prefix)
        except ConfigurationError as e:
            logger.error(f"Invalid configuration for {ref.full_name}: {e}")
            return False

        allocated: set[str] = set()
        found = False

        for merge in MERGE_MODES:
            name = names.name_for(pull.number, merge, fork, trusted)
            if name is None:
                logger.info(
                    f"Not building {'merge' if merge else 'unmerged'} variant "
                    f"of #{pull.number}: disabled by policy"
                )
                continue
            if name in allocated:
                logger.error(
                    f"Variants of #{pull.number} share the job name {name}, "
                    "check the build policy"
                )
                continue
            allocated.add(name)

            head = PullRequestHead(
                number=pull.number,
                name=name,
                merge=merge,
                fork=fork,
                trusted=trusted,
                source_owner=pull.head_repo_owner,
                source_repo=pull.head_repo_name,
                source_branch=pull.head_ref,
                target_branch=pull.base_ref,
            )
            revision = PullRequestRevision(
                head=head, base_hash=pull.base_sha, head_hash=pull.head_sha
            )
            cause = webhook_cause(
                "pull_request",
                f"Pull request #{pull.number} {action or 'updated'}",
                delivery_id,
            )
            scheduled = await self.scheduler.schedule(owner, revision, name, cause)
            found = scheduled or found

        return found


class WebhookDispatcher:
    """Routes deliveries to the handler registered for their event kind."""

    def __init__(self, client: GitHubClient, scheduler: BuildScheduler):
        self.handlers: dict[str, EventHandler] = {
            handler.event_kind: handler
            for handler in (
                PushHandler(client, scheduler),
                PullRequestHandler(client, scheduler),
            )
        }

    @property
    def event_kinds(self) -> frozenset[str]:
        return frozenset(self.handlers)

    async def handle(
        self,
        event_kind: str,
        payload: str,
        data: dict[str, Any],
        owner: str,
        source: RepositorySource,
        delivery_id: str | None = None,
    ) -> bool:
        """
        Dispatch one delivery.

        Raises:
            UnsupportedEventError: If no handler exists for event_kind
        """
        handler = self.handlers.get(event_kind)
        if handler is None:
            raise UnsupportedEventError(event_kind)
        return await handler.handle(payload, data, owner, source, delivery_id)
