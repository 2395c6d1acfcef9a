import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request

from ci_client.github import GitHubClient
from ci_common.repository import JobTreeRepository
from ci_persistence.sqlite_repository import SQLiteJobTreeRepository
from ci_webhooks.scheduler import BuildScheduler
from ci_webhooks.subscribers import WebhookDispatcher

logger = logging.getLogger(__name__)

# Global instances (initialized at startup)
repository: JobTreeRepository | None = None
dispatcher: WebhookDispatcher | None = None


def get_database_path() -> str:
    """
    Get the database path from environment or use default.

    Environment variables:
    - CI_DB_PATH: Custom database path (useful for testing)
    """
    return os.environ.get("CI_DB_PATH", "ci_webhooks.db")


def get_github_token() -> str | None:
    """
    Get the API token used for GitHub calls.

    Environment variables:
    - CI_GITHUB_TOKEN: Token sent as a Bearer credential (optional)
    """
    return os.environ.get("CI_GITHUB_TOKEN") or None


def get_github_timeout() -> float:
    """
    Get the GitHub request timeout in seconds.

    Environment variables:
    - CI_GITHUB_TIMEOUT: Seconds before a request is abandoned (default: 30)
    """
    try:
        timeout = float(os.environ.get("CI_GITHUB_TIMEOUT", "30"))
    except ValueError:
        logger.warning(
            f"Invalid CI_GITHUB_TIMEOUT={os.environ.get('CI_GITHUB_TIMEOUT')}, "
            "using default 30"
        )
        return 30.0
    if timeout <= 0:
        logger.warning(f"Invalid CI_GITHUB_TIMEOUT={timeout}, using default 30")
        return 30.0
    return timeout


def get_cancel_running() -> bool:
    """
    Whether a newer revision also cancels running builds.

    Environment variables:
    - CI_CANCEL_RUNNING_BUILDS: "1", "true" or "yes" to enable (default: off)
    """
    value = os.environ.get("CI_CANCEL_RUNNING_BUILDS", "")
    return value.strip().lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI app.

    Handles startup and shutdown events:
    - Startup: Connect to the database, build the client and dispatcher
    - Shutdown: Close database connections
    """
    global repository, dispatcher

    db_path = get_database_path()
    repository = SQLiteJobTreeRepository(db_path)
    await repository.initialize()

    client = GitHubClient(token=get_github_token(), timeout=get_github_timeout())
    scheduler = BuildScheduler(repository, cancel_running=get_cancel_running())
    dispatcher = WebhookDispatcher(client, scheduler)
    logger.info(f"Webhook server ready (database: {db_path})")

    yield

    if repository:
        await repository.close()


app = FastAPI(lifespan=lifespan)


def get_repository() -> JobTreeRepository:
    """
    Get the global repository instance.

    Raises:
        RuntimeError: If repository is not initialized
    """
    if repository is None:
        raise RuntimeError("Repository not initialized")
    return repository


def get_dispatcher() -> WebhookDispatcher:
    """
    Get the global webhook dispatcher.

    Raises:
        RuntimeError: If the dispatcher is not initialized
    """
    if dispatcher is None:
        raise RuntimeError("Dispatcher not initialized")
    return dispatcher


@app.post("/github-webhook/")
async def receive_webhook(
    request: Request,
    repo: JobTreeRepository = Depends(get_repository),
    events: WebhookDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    """
    Receive a GitHub webhook delivery.

    The event kind comes from the X-GitHub-Event header. Each source
    registered for the payload's repository is handled independently.

    Raises:
        HTTPException: 400 for unsupported events or undecodable payloads
    """
    event_kind = request.headers.get("X-GitHub-Event", "")
    delivery_id = request.headers.get("X-GitHub-Delivery")

    if event_kind == "ping":
        return {"status": "pong"}
    if event_kind not in events.event_kinds:
        raise HTTPException(
            status_code=400, detail=f"Unsupported event: {event_kind or '(none)'}"
        )

    body = await request.body()
    try:
        payload = body.decode("utf-8")
        data = json.loads(payload)
        full_name = data["repository"]["full_name"]
        repo_owner, repo_name = full_name.split("/", 1)
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
        raise HTTPException(status_code=400, detail=f"Malformed payload: {e}")

    sources = await repo.find_sources(repo_owner, repo_name)
    if not sources:
        logger.info(f"No source registered for {full_name}, ignoring {event_kind}")

    scheduled = False
    for source in sources:
        result = await events.handle(
            event_kind, payload, data, source.owner_job, source, delivery_id
        )
        scheduled = result or scheduled

    return {"event": event_kind, "sources": len(sources), "scheduled": scheduled}


@app.get("/health")
async def health_check() -> dict[str, str]:
    """
    Health check endpoint.

    Returns:
        Dictionary with status="ok" if server is running
    """
    return {"status": "ok"}


@app.get("/owners/{owner}/builds")
async def list_builds(
    owner: str,
    repo: JobTreeRepository = Depends(get_repository),
) -> list[dict[str, Any]]:
    """List the builds of an owning job container, oldest first."""
    builds = await repo.list_builds(owner)
    return [build.to_summary_dict() for build in builds]


@app.get("/builds/{build_id}")
async def get_build(
    build_id: str,
    repo: JobTreeRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Get a build with its revision and cause.

    Raises:
        HTTPException: 404 if build_id not found
    """
    build = await repo.get_build(build_id)

    if build is None:
        raise HTTPException(status_code=404, detail="Build not found")

    return build.to_dict()
