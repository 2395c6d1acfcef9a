"""
CI Common module.

This module contains shared domain models and interfaces used across
the webhook components (server, scheduler, persistence, admin CLI).

The common module has no dependencies on other ci_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .errors import ConfigurationError, UnsupportedEventError
from .models import (
    BranchHead,
    BranchRevision,
    Build,
    BuildCause,
    PullRequestHead,
    PullRequestRevision,
    RepositoryRef,
    RepositorySource,
    SubJob,
)
from .repository import JobTreeRepository

__all__ = [
    "BranchHead",
    "BranchRevision",
    "Build",
    "BuildCause",
    "ConfigurationError",
    "JobTreeRepository",
    "PullRequestHead",
    "PullRequestRevision",
    "RepositoryRef",
    "RepositorySource",
    "SubJob",
    "UnsupportedEventError",
]
