"""
Unit tests for the push and pull request handlers and the dispatcher.
"""

import json
from dataclasses import replace
from unittest.mock import AsyncMock, Mock

import pytest
import requests
from webhook_helpers import (
    SHA_A,
    SHA_B,
    make_pull,
    make_source,
    pull_request_payload,
    push_payload,
)

from ci_client.github import GitHubClient, RemoteAPIError
from ci_common.errors import UnsupportedEventError
from ci_common.models import (
    BranchFilter,
    BuildPolicy,
    PullRequestBuildMode,
    PullRequestRevision,
    TrustPolicy,
)
from ci_webhooks.scheduler import BuildScheduler
from ci_webhooks.subscribers import (
    PullRequestHandler,
    PushHandler,
    WebhookDispatcher,
)

OWNER = "widgets"


async def deliver(handler, payload, source, delivery_id=None):
    return await handler.handle(payload, json.loads(payload), OWNER, source, delivery_id)


class TestPushHandler:
    """Test suite for push deliveries."""

    @pytest.mark.asyncio
    async def test_push_to_branch_schedules_build(self, mock_client, temp_db):
        handler = PushHandler(mock_client, BuildScheduler(temp_db))

        found = await deliver(handler, push_payload(), make_source(), "delivery-1")

        assert found is True
        (build,) = await temp_db.list_builds(OWNER)
        assert build.name == "main"
        assert build.revision.hash == SHA_A
        assert build.cause.kind == "webhook"
        assert build.cause.event == "push"
        assert build.cause.delivery_id == "delivery-1"

    @pytest.mark.asyncio
    async def test_tag_push_is_ignored(self, mock_client, temp_db):
        handler = PushHandler(mock_client, BuildScheduler(temp_db))

        found = await deliver(handler, push_payload(ref="refs/tags/v1.0"), make_source())

        assert found is False
        assert await temp_db.list_builds(OWNER) == []

    @pytest.mark.asyncio
    async def test_branch_deletion_is_ignored(self, mock_client, temp_db):
        handler = PushHandler(mock_client, BuildScheduler(temp_db))

        found = await deliver(
            handler, push_payload(after="0" * 40, deleted=True), make_source()
        )

        assert found is False
        assert await temp_db.list_builds(OWNER) == []

    @pytest.mark.asyncio
    async def test_excluded_branch_schedules_nothing(self, mock_client, temp_db):
        handler = PushHandler(mock_client, BuildScheduler(temp_db))
        source = make_source(branch_filter=BranchFilter(excludes="feature/*"))

        found = await deliver(handler, push_payload(ref="refs/heads/feature/x"), source)

        assert found is False
        assert await temp_db.list_builds(OWNER) == []
        assert await temp_db.list_sub_jobs(OWNER) == []

    @pytest.mark.asyncio
    async def test_branch_name_is_encoded(self, mock_client, temp_db):
        handler = PushHandler(mock_client, BuildScheduler(temp_db))

        await deliver(handler, push_payload(ref="refs/heads/feature/x"), make_source())

        (build,) = await temp_db.list_builds(OWNER)
        assert build.name == "feature%2Fx"
        assert build.revision.head.name == "feature/x"

    @pytest.mark.asyncio
    async def test_remote_failure_returns_false(self, mock_client, temp_db):
        mock_client.list_open_pull_requests.side_effect = RemoteAPIError("down")
        handler = PushHandler(mock_client, BuildScheduler(temp_db))
        source = make_source(build_branches_with_pr=False)

        found = await deliver(handler, push_payload(), source)

        assert found is False
        assert await temp_db.list_builds(OWNER) == []

    @pytest.mark.asyncio
    async def test_malformed_payload_returns_false(self, mock_client, temp_db):
        handler = PushHandler(mock_client, BuildScheduler(temp_db))

        found = await handler.handle("{}", {}, OWNER, make_source())

        assert found is False

    @pytest.mark.asyncio
    async def test_new_commit_supersedes_queued_build(self, mock_client, temp_db):
        handler = PushHandler(mock_client, BuildScheduler(temp_db))

        await deliver(handler, push_payload(after=SHA_A), make_source())
        await deliver(handler, push_payload(after=SHA_B), make_source())

        active = await temp_db.list_active_builds(OWNER, "main")
        assert [b.revision.hash for b in active] == [SHA_B]

    @pytest.mark.asyncio
    async def test_redelivered_push_builds_once(self, mock_client, temp_db):
        handler = PushHandler(mock_client, BuildScheduler(temp_db))

        assert await deliver(handler, push_payload(), make_source(), "delivery-1")
        assert await deliver(handler, push_payload(), make_source(), "delivery-1")

        (build,) = await temp_db.list_builds(OWNER)
        assert build.revision.hash == SHA_A

    @pytest.mark.asyncio
    async def test_branch_named_like_pull_request_keeps_its_own_job(
        self, mock_client, temp_db
    ):
        """A push to PR-42-merge never supersedes the merge build of #42."""
        scheduler = BuildScheduler(temp_db)
        await deliver(
            PullRequestHandler(mock_client, scheduler), pull_request_payload(), make_source()
        )

        found = await deliver(
            PushHandler(mock_client, scheduler),
            push_payload(ref="refs/heads/PR-42-merge", after=SHA_B),
            make_source(),
        )

        assert found is True
        (merge,) = await temp_db.list_active_builds(OWNER, "PR-42-merge")
        assert isinstance(merge.revision, PullRequestRevision)
        (branch,) = await temp_db.list_active_builds(OWNER, "%50R-42-merge")
        assert branch.revision.hash == SHA_B


class TestPullRequestHandler:
    """Test suite for pull_request deliveries."""

    @pytest.mark.asyncio
    async def test_origin_pull_request_builds_both_variants(self, mock_client, temp_db):
        handler = PullRequestHandler(mock_client, BuildScheduler(temp_db))

        found = await deliver(handler, pull_request_payload(number=42), make_source())

        assert found is True
        builds = {b.name: b for b in await temp_db.list_builds(OWNER)}
        assert set(builds) == {"PR-42-unmerged", "PR-42-merge"}
        merge = builds["PR-42-merge"].revision
        assert isinstance(merge, PullRequestRevision)
        assert merge.head.merge is True
        assert merge.head.fork is False
        assert merge.head.trusted is True
        assert merge.head_hash == SHA_A

    @pytest.mark.asyncio
    async def test_untrusted_fork_skips_trusted_only_merge(self, mock_client, temp_db):
        mock_client.get_pull_request.return_value = make_pull(number=7, head_owner="bob")
        handler = PullRequestHandler(mock_client, BuildScheduler(temp_db))
        source = make_source(build_policy=BuildPolicy(fork_merge=PullRequestBuildMode.TRUSTED))

        found = await deliver(
            handler, pull_request_payload(number=7, head_owner="bob"), source
        )

        assert found is True
        (build,) = await temp_db.list_builds(OWNER)
        assert build.name == "PR-7-unmerged"
        assert build.revision.head.fork is True
        assert build.revision.head.trusted is False

    @pytest.mark.asyncio
    async def test_trust_is_frozen_into_the_head(self, mock_client, temp_db):
        """Changing the policy later does not alter heads already built."""
        mock_client.get_pull_request.return_value = make_pull(number=7, head_owner="bob")
        handler = PullRequestHandler(mock_client, BuildScheduler(temp_db))
        source = make_source(trust_policy=TrustPolicy.EVERYONE)

        payload = pull_request_payload(number=7, head_owner="bob")

        await deliver(handler, payload, source)
        (earlier,) = await temp_db.list_active_builds(OWNER, "PR-7-unmerged")
        source.trust_policy = TrustPolicy.NOBODY
        assert await deliver(handler, payload, source)

        earlier = await temp_db.get_build(earlier.id)
        assert earlier.revision.head.trusted is True
        (current,) = await temp_db.list_active_builds(OWNER, "PR-7-unmerged")
        assert current.id != earlier.id
        assert current.revision.head.trusted is False
        assert current.revision.head_hash == earlier.revision.head_hash

    @pytest.mark.asyncio
    async def test_closed_action_is_ignored(self, mock_client, temp_db):
        handler = PullRequestHandler(mock_client, BuildScheduler(temp_db))

        found = await deliver(handler, pull_request_payload(action="closed"), make_source())

        assert found is False
        mock_client.get_pull_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_pull_request_closed_since_delivery_is_ignored(
        self, mock_client, temp_db
    ):
        """A stale "synchronize" for a PR the API reports closed builds nothing."""
        mock_client.get_pull_request.return_value = replace(make_pull(), state="closed")
        handler = PullRequestHandler(mock_client, BuildScheduler(temp_db))

        found = await deliver(
            handler, pull_request_payload(action="synchronize"), make_source()
        )

        assert found is False
        assert await temp_db.list_builds(OWNER) == []

    @pytest.mark.asyncio
    async def test_malformed_api_response_returns_false(self, temp_db):
        """A repository response missing fields is handled like a remote failure."""
        api_pull = json.loads(pull_request_payload())["pull_request"]
        session = Mock(spec=requests.Session)
        session.headers = {}
        pull_response = Mock(spec=requests.Response, status_code=200)
        pull_response.json.return_value = api_pull
        repo_response = Mock(spec=requests.Response, status_code=200)
        repo_response.json.return_value = {"message": "partial"}
        session.request.side_effect = [pull_response, repo_response]
        handler = PullRequestHandler(GitHubClient(session=session), BuildScheduler(temp_db))

        found = await deliver(handler, pull_request_payload(), make_source())

        assert found is False
        assert session.request.call_count == 2
        assert await temp_db.list_builds(OWNER) == []

    @pytest.mark.asyncio
    async def test_remote_failure_returns_false(self, mock_client, temp_db):
        mock_client.get_pull_request.side_effect = RemoteAPIError("rate limited", 403)
        handler = PullRequestHandler(mock_client, BuildScheduler(temp_db))

        found = await deliver(handler, pull_request_payload(), make_source())

        assert found is False
        assert await temp_db.list_builds(OWNER) == []

    @pytest.mark.asyncio
    async def test_all_variants_disabled(self, mock_client, temp_db):
        handler = PullRequestHandler(mock_client, BuildScheduler(temp_db))
        disabled = PullRequestBuildMode.DISABLED
        source = make_source(
            build_policy=BuildPolicy(origin_head=disabled, origin_merge=disabled)
        )

        found = await deliver(handler, pull_request_payload(), source)

        assert found is False

    @pytest.mark.asyncio
    async def test_one_variant_failing_does_not_stop_the_other(self, mock_client):
        """Both variants are attempted even when the first is not scheduled."""
        scheduler = Mock(spec=BuildScheduler)
        scheduler.schedule = AsyncMock(side_effect=[False, True])
        handler = PullRequestHandler(mock_client, scheduler)

        found = await deliver(handler, pull_request_payload(), make_source())

        assert found is True
        assert scheduler.schedule.await_count == 2

    @pytest.mark.asyncio
    async def test_first_variant_success_still_schedules_second(self, mock_client):
        scheduler = Mock(spec=BuildScheduler)
        scheduler.schedule = AsyncMock(return_value=True)
        handler = PullRequestHandler(mock_client, scheduler)

        await deliver(handler, pull_request_payload(), make_source())

        names = [call.args[2] for call in scheduler.schedule.await_args_list]
        assert names == ["PR-42-unmerged", "PR-42-merge"]

    @pytest.mark.asyncio
    async def test_invalid_prefix_returns_false(self, mock_client, temp_db):
        handler = PullRequestHandler(mock_client, BuildScheduler(temp_db))

        found = await deliver(handler, pull_request_payload(), make_source(pr_name_prefix=""))

        assert found is False
        assert await temp_db.list_builds(OWNER) == []


class TestWebhookDispatcher:
    """Test suite for WebhookDispatcher."""

    def test_event_kinds(self, mock_client):
        dispatcher = WebhookDispatcher(mock_client, Mock(spec=BuildScheduler))

        assert dispatcher.event_kinds == {"push", "pull_request"}

    @pytest.mark.asyncio
    async def test_unknown_event_is_rejected(self, mock_client):
        dispatcher = WebhookDispatcher(mock_client, Mock(spec=BuildScheduler))

        with pytest.raises(UnsupportedEventError) as excinfo:
            await dispatcher.handle("issues", "{}", {}, OWNER, make_source())

        assert excinfo.value.event_kind == "issues"

    @pytest.mark.asyncio
    async def test_routes_push(self, mock_client, temp_db):
        dispatcher = WebhookDispatcher(mock_client, BuildScheduler(temp_db))
        payload = push_payload()

        found = await dispatcher.handle("push", payload, json.loads(payload), OWNER, make_source())

        assert found is True
