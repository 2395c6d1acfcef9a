"""
Fork detection and trust evaluation for pull requests.

Trust controls whether a pull request build may see credentials. It is
decided once per event, frozen into the PullRequestHead, and never cached
across events.
"""

import logging

from ci_client.github import GitHubClient, GitHubRepository, PullRequest
from ci_common.models import RepositoryRef, TrustPolicy

logger = logging.getLogger(__name__)

WRITE_PERMISSIONS = frozenset({"admin", "maintain", "write"})


def is_fork(
    configured: RepositoryRef,
    pull: PullRequest,
    repository: GitHubRepository | None = None,
) -> bool:
    """
    Return True if the pull request comes from another repository.

    Repository ids are compared when both are known, since owner logins
    change when a repository is renamed or transferred. Otherwise the head
    owner login is compared case-insensitively with the configured owner.
    A pull request whose head repository was deleted is a fork.
    """
    base_id = repository.id if repository is not None else None
    if base_id is None:
        base_id = pull.base_repo_id or configured.repository_id
    if base_id is not None and pull.head_repo_id is not None:
        return pull.head_repo_id != base_id
    if pull.head_repo_owner is None:
        return True
    return pull.head_repo_owner.lower() != configured.owner.lower()


class TrustEvaluator:
    """
    Classifies pull requests as trusted or untrusted.

    Pull requests from the base repository are always trusted. Fork pull
    requests are trusted according to the configured TrustPolicy. The API
    client is passed in explicitly; there is no ambient authority.
    """

    def __init__(self, client: GitHubClient, policy: TrustPolicy):
        self.client = client
        self.policy = policy

    def is_trusted(
        self,
        repository: RepositoryRef,
        pull: PullRequest,
        base: GitHubRepository | None = None,
    ) -> bool:
        """
        Decide whether pull is trusted.

        Raises:
            RemoteAPIError: If the collaborator lookup fails
        """
        if not is_fork(repository, pull, base):
            return True

        if self.policy is TrustPolicy.EVERYONE:
            return True
        if self.policy is TrustPolicy.NOBODY or not pull.author:
            return False

        if self.policy is TrustPolicy.CONTRIBUTORS:
            trusted = self.client.is_collaborator(repository, pull.author)
        else:
            permission = self.client.get_collaborator_permission(
                repository, pull.author
            )
            trusted = permission in WRITE_PERMISSIONS

        logger.debug(
            f"Fork pull request #{pull.number} by {pull.author} "
            f"trusted={trusted} under policy {self.policy.value}"
        )
        return trusted
