"""
CI Client module.

Outbound client for the remote Git hosting API.
"""

from .github import GitHubClient, PayloadError, PullRequest, RemoteAPIError

__all__ = ["GitHubClient", "PayloadError", "PullRequest", "RemoteAPIError"]
