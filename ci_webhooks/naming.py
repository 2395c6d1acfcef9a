"""
Job names for branches and pull request variants.

Names are deterministic and free of I/O: the same inputs and policy always
produce the same name, and the name never depends on trust.
"""

from urllib.parse import quote

from ci_common.errors import ConfigurationError
from ci_common.models import BuildPolicy, PullRequestBuildMode

SAFE_CHARACTERS = "-._"

MERGE_SUFFIX = "-merge"
UNMERGED_SUFFIX = "-unmerged"


def sanitize(name: str) -> str:
    """
    Percent-encode everything except letters, digits and "-._~".

    Encoding rather than replacing keeps distinct branch names distinct:
    "feature/x" becomes "feature%2Fx" and never collides with "feature_x".
    """
    return quote(name, safe=SAFE_CHARACTERS)


class NameAllocator:
    """
    Maps branches and pull request variants to sub-job names.

    For a pull request the name is "<prefix><number>" when only one of the
    head/merge variants is configured for its origin class, and carries a
    "-unmerged" or "-merge" suffix when both are.

    The prefix is reserved for pull requests. A branch whose encoded name
    starts with it has its first character percent-encoded as well, so
    "PR-42-merge" the branch becomes "%50R-42-merge" and never shares a job
    with pull request #42.
    """

    def __init__(self, policy: BuildPolicy, prefix: str = "PR-"):
        self.policy = policy
        self.prefix = sanitize(prefix)
        if not self.prefix or self.prefix.startswith("%"):
            raise ConfigurationError(
                f"Invalid pull request name prefix: {prefix!r} "
                "(must start with a letter, digit or one of -._~)"
            )

    def _both_variants(self, fork: bool) -> bool:
        head = self.policy.mode_for(merge=False, fork=fork)
        merge = self.policy.mode_for(merge=True, fork=fork)
        return (
            head is not PullRequestBuildMode.DISABLED
            and merge is not PullRequestBuildMode.DISABLED
        )

    def name_for(
        self, number: int, merge: bool, fork: bool, trusted: bool = True
    ) -> str | None:
        """
        Return the sub-job name of one pull request variant, or None.

        None means the policy does not build this variant: it is disabled,
        or it is restricted to trusted pull requests and this one is not.
        """
        mode = self.policy.mode_for(merge=merge, fork=fork)
        if mode is PullRequestBuildMode.DISABLED:
            return None
        if mode is PullRequestBuildMode.TRUSTED and not trusted:
            return None

        name = f"{self.prefix}{number}"
        if self._both_variants(fork):
            name += MERGE_SUFFIX if merge else UNMERGED_SUFFIX
        return name

    def name_for_branch(self, branch: str) -> str:
        name = sanitize(branch)
        if name.startswith(self.prefix):
            name = f"%{ord(name[0]):02X}{name[1:]}"
        return name
