"""
Shared fixtures for the unit tests: a temporary job tree database and a
mocked GitHub client.
"""

import os
import tempfile
from unittest.mock import Mock

import pytest
import pytest_asyncio
from webhook_helpers import BASE_REPO_ID, make_pull

from ci_client.github import GitHubClient, GitHubRepository
from ci_persistence.sqlite_repository import SQLiteJobTreeRepository


@pytest.fixture
def mock_client():
    """
    A GitHub client whose payload parsing is real and whose API calls are
    mocked. Tests set get_pull_request.return_value as needed.
    """
    parser = GitHubClient()
    client = Mock(spec=GitHubClient)
    client.get_push.side_effect = parser.get_push
    client.parse_pull_request.side_effect = parser.parse_pull_request
    client.get_pull_request.return_value = make_pull()
    client.get_repository.return_value = GitHubRepository(
        id=BASE_REPO_ID, owner="acme", name="widgets", default_branch="main"
    )
    client.list_open_pull_requests.return_value = []
    client.is_collaborator.return_value = False
    client.get_collaborator_permission.return_value = "read"
    return client


@pytest_asyncio.fixture
async def temp_db():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteJobTreeRepository(path)
    await repo.initialize()

    yield repo

    await repo.close()
    if os.path.exists(path):
        os.unlink(path)
