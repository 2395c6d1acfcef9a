"""
Turns a pushed branch into a buildable revision, or decides to skip it.
"""

import fnmatch
import logging

from ci_client.github import GitHubClient
from ci_common.models import BranchFilter, BranchHead, BranchRevision, RepositoryRef

logger = logging.getLogger(__name__)


class BranchFilterPolicy:
    """
    Wildcard include/exclude patterns over branch names.

    Patterns are space separated; a branch is built when it matches at least
    one include pattern and no exclude pattern.
    """

    def __init__(self, branch_filter: BranchFilter):
        self.includes = branch_filter.includes.split()
        self.excludes = branch_filter.excludes.split()

    def is_excluded(self, branch: str) -> bool:
        if not any(fnmatch.fnmatchcase(branch, p) for p in self.includes):
            return True
        return any(fnmatch.fnmatchcase(branch, p) for p in self.excludes)


class RevisionResolver:
    """
    Packages the source's branch policy decision into a revision.

    The branch filter and the "skip branches that have an open pull request"
    option belong to the registered source; this class only applies them.
    """

    def __init__(
        self,
        client: GitHubClient,
        branch_filter: BranchFilter,
        build_branches_with_pr: bool = True,
    ):
        self.client = client
        self.filter = BranchFilterPolicy(branch_filter)
        self.build_branches_with_pr = build_branches_with_pr

    def for_branch(
        self,
        name: str,
        sha: str,
        repository: RepositoryRef,
        excluded_branch_names: set[str],
        listener: logging.Logger = logger,
    ) -> BranchRevision | None:
        """
        Resolve a branch at sha to a revision.

        Args:
            name: Branch name without the refs/heads/ prefix
            sha: Commit the branch points at
            repository: Repository the branch lives in
            excluded_branch_names: Receives the branches skipped because an
                open pull request already builds them
            listener: Logger receiving the decision

        Returns:
            The revision to build, or None when the branch is skipped

        Raises:
            RemoteAPIError: If open pull requests cannot be listed
        """
        if self.filter.is_excluded(name):
            listener.info(f"Branch {name} of {repository.full_name} excluded by filter")
            return None

        if not self.build_branches_with_pr:
            pulls = self.client.list_open_pull_requests(repository, name)
            if pulls:
                excluded_branch_names.add(name)
                listener.info(
                    f"Branch {name} of {repository.full_name} is built by "
                    f"pull request #{pulls[0].number}"
                )
                return None

        return BranchRevision(head=BranchHead(name), hash=sha)
