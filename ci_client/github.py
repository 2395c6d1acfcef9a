"""
GitHub REST client used by the webhook handlers.

All calls are blocking; the async handlers run them in worker threads.
Every failure, whether network, HTTP status or malformed payload, surfaces
as RemoteAPIError so callers have a single error to handle.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

import requests

from ci_common.models import PullRequestEvent, PushEvent, RepositoryRef

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "application/vnd.github+json"


class RemoteAPIError(IOError):
    """Raised when the hosting service cannot be queried or answers badly."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PayloadError(RemoteAPIError):
    """Raised when a webhook payload lacks the fields needed to locate objects."""


@dataclass(frozen=True)
class GitHubRepository:
    """Repository metadata as returned by the API."""

    id: int
    owner: str
    name: str
    default_branch: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class PullRequest:
    """Pull request state as returned by the API."""

    number: int
    state: str
    base_sha: str
    base_ref: str
    base_repo_id: int | None
    head_sha: str
    head_ref: str
    head_repo_id: int | None  # None when the head repository was deleted
    head_repo_owner: str | None
    head_repo_name: str | None
    author: str | None


def _load(payload: str) -> dict[str, Any]:
    try:
        data = json.loads(payload)
    except ValueError as e:
        raise PayloadError(f"Webhook payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PayloadError("Webhook payload is not a JSON object")
    return data


def _require(data: dict[str, Any], *path: str) -> Any:
    value: Any = data
    for key in path:
        if not isinstance(value, dict) or key not in value:
            raise PayloadError(f"Webhook payload is missing {'.'.join(path)}")
        value = value[key]
    return value


def _parse_pull_request(data: dict[str, Any]) -> PullRequest:
    head_repo = data["head"].get("repo") or {}
    base_repo = data["base"].get("repo") or {}
    return PullRequest(
        number=data["number"],
        state=data.get("state", "open"),
        base_sha=data["base"]["sha"],
        base_ref=data["base"]["ref"],
        base_repo_id=base_repo.get("id"),
        head_sha=data["head"]["sha"],
        head_ref=data["head"]["ref"],
        head_repo_id=head_repo.get("id"),
        head_repo_owner=(head_repo.get("owner") or {}).get("login"),
        head_repo_name=head_repo.get("name"),
        author=(data.get("user") or {}).get("login"),
    )


class GitHubClient:
    """
    Thin GitHub REST v3 client.

    Repository-scoped calls go to the API URL of the RepositoryRef, so one
    client can serve github.com and GitHub Enterprise sources alike.
    """

    def __init__(
        self,
        token: str | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        """
        Initialize the client.

        Args:
            token: Optional API token sent as a Bearer credential
            timeout: Seconds before a request is abandoned
            session: Optional preconfigured requests session
        """
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault("Accept", ACCEPT_HEADER)
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _url(self, ref: RepositoryRef, path: str = "") -> str:
        return f"{ref.api_url.rstrip('/')}/repos/{ref.owner}/{ref.name}{path}"

    def _request(
        self, method: str, url: str, params: dict[str, Any] | None = None
    ) -> requests.Response:
        try:
            response = self.session.request(
                method, url, params=params, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise RemoteAPIError(f"Error contacting {url}: {e}") from e
        return response

    def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        response = self._request("GET", url, params=params)
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise RemoteAPIError(
                f"GET {url} failed: {e}", status_code=response.status_code
            ) from e
        try:
            return response.json()
        except ValueError as e:
            raise RemoteAPIError(f"GET {url} returned invalid JSON: {e}") from e

    # Payload parsing

    def get_push(self, payload: str) -> PushEvent:
        """
        Parse a push delivery.

        Raises:
            PayloadError: If ref or the head commit is missing
        """
        data = _load(payload)
        ref = _require(data, "ref")
        sha = _require(data, "after")
        if not isinstance(ref, str) or not isinstance(sha, str):
            raise PayloadError("Push payload ref and after must be strings")
        deleted = bool(data.get("deleted")) or set(sha) == {"0"}
        return PushEvent(ref=ref, sha=sha, payload=payload, deleted=deleted)

    def parse_pull_request(self, payload: str) -> PullRequestEvent:
        """
        Parse a pull_request delivery without contacting the API.

        Raises:
            PayloadError: If the pull request fields are missing
        """
        data = _load(payload)
        pull = _require(data, "pull_request")
        try:
            head_repo = pull["head"].get("repo") or {}
            return PullRequestEvent(
                number=int(data.get("number", pull.get("number"))),
                base_sha=pull["base"]["sha"],
                head_sha=pull["head"]["sha"],
                head_owner=(head_repo.get("owner") or {}).get("login"),
                payload=payload,
                action=data.get("action"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise PayloadError(f"Malformed pull_request payload: {e}") from e

    # API calls

    def get_repository(self, ref: RepositoryRef) -> GitHubRepository:
        """Fetch repository metadata."""
        data = self._get_json(self._url(ref))
        try:
            return GitHubRepository(
                id=data["id"],
                owner=data["owner"]["login"],
                name=data["name"],
                default_branch=data.get("default_branch"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise RemoteAPIError(f"Unexpected repository response: {e}") from e

    def get_pull_request(self, ref: RepositoryRef, payload: str) -> PullRequest:
        """
        Fetch the current state of the pull request a delivery refers to.

        The payload only locates the pull request; every value returned comes
        from the API so stale or partial deliveries are not trusted.
        """
        event = self.parse_pull_request(payload)
        data = self._get_json(self._url(ref, f"/pulls/{event.number}"))
        logger.info(f"Fetched pull request {ref.full_name}#{event.number}")
        try:
            return _parse_pull_request(data)
        except (KeyError, TypeError, AttributeError) as e:
            raise RemoteAPIError(f"Unexpected pull request response: {e}") from e

    def list_open_pull_requests(
        self, ref: RepositoryRef, branch: str
    ) -> list[PullRequest]:
        """List open pull requests whose head is branch of ref itself."""
        data = self._get_json(
            self._url(ref, "/pulls"),
            params={"state": "open", "head": f"{ref.owner}:{branch}"},
        )
        if not isinstance(data, list):
            raise RemoteAPIError("Unexpected pull request list response")
        try:
            return [_parse_pull_request(item) for item in data]
        except (KeyError, TypeError, AttributeError) as e:
            raise RemoteAPIError(f"Unexpected pull request list response: {e}") from e

    def is_collaborator(self, ref: RepositoryRef, login: str) -> bool:
        """Return True if login is a collaborator of ref."""
        url = self._url(ref, f"/collaborators/{login}")
        response = self._request("GET", url)
        if response.status_code == 204:
            return True
        if response.status_code == 404:
            return False
        raise RemoteAPIError(
            f"GET {url} returned {response.status_code}",
            status_code=response.status_code,
        )

    def get_collaborator_permission(self, ref: RepositoryRef, login: str) -> str:
        """Return the permission of login on ref ("admin", "write", "read", "none")."""
        data = self._get_json(self._url(ref, f"/collaborators/{login}/permission"))
        permission = data.get("permission", "none") if isinstance(data, dict) else None
        if not isinstance(permission, str):
            raise RemoteAPIError(f"Unexpected permission response for {login}")
        return permission
