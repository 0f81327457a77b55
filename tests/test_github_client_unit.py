"""Unit tests for the GitHub API client.

Requests are served by an httpx.MockTransport so retry, rate limit and
error mapping run against real httpx responses.
"""

import json
from typing import Callable, List

import httpx
import pytest

from conftest import run_async
from deploy_to_balena.github import (
    GitHubAPIError,
    GitHubClient,
    RateLimitError,
)


def _make_client(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> GitHubClient:
    kwargs.setdefault("base_delay", 0.0)
    return GitHubClient(
        token="ghp_test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _recording(responses: List[httpx.Response], requests: List[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responses.pop(0)

    return handler


CHECK_RUNS = {
    "total_count": 2,
    "check_runs": [
        {
            "id": 11,
            "name": "deploy",
            "status": "completed",
            "conclusion": "success",
            "completed_at": "2024-01-01T12:00:00Z",
            "output": {"title": "deploy-to-balena", "text": '{"acme/fleet": {}}'},
        },
        {
            "id": 12,
            "name": "Versionbot",
            "status": "in_progress",
            "conclusion": None,
            "completed_at": None,
            "output": {"title": None, "text": None},
        },
    ],
}


class TestCheckRuns:
    def test_list_check_runs(self):
        requests: List[httpx.Request] = []
        client = _make_client(
            _recording([httpx.Response(200, json=CHECK_RUNS)], requests)
        )

        runs = run_async(client.list_check_runs("acme", "widgets", "fba0317", check_name="deploy"))

        request = requests[0]
        assert request.method == "GET"
        assert request.url.path == "/repos/acme/widgets/commits/fba0317/check-runs"
        assert request.url.params["check_name"] == "deploy"
        assert request.url.params["per_page"] == "100"
        assert request.url.params["filter"] == "all"
        assert request.url.params["page"] == "1"
        assert request.headers["Authorization"] == "Bearer ghp_test"
        assert [run.id for run in runs] == [11, 12]
        assert runs[0].is_completed is True
        assert runs[0].output_text == '{"acme/fleet": {}}'
        assert runs[1].is_completed is False

    def test_list_check_runs_follows_pages(self):
        def page_of(start: int, count: int) -> dict:
            return {
                "total_count": 150,
                "check_runs": [
                    {"id": start + i, "name": "deploy", "status": "completed"}
                    for i in range(count)
                ],
            }

        requests: List[httpx.Request] = []
        client = _make_client(
            _recording(
                [
                    httpx.Response(200, json=page_of(1, 100)),
                    httpx.Response(200, json=page_of(101, 50)),
                ],
                requests,
            )
        )

        runs = run_async(client.list_check_runs("acme", "widgets", "fba0317", check_name="deploy"))

        assert [request.url.params["page"] for request in requests] == ["1", "2"]
        assert len(runs) == 150
        assert runs[-1].id == 150

    def test_update_check_run_output(self):
        requests: List[httpx.Request] = []
        client = _make_client(_recording([httpx.Response(200, json={})], requests))

        run_async(
            client.update_check_run_output(
                "acme", "widgets", 11, title="deploy-to-balena", summary="s", text="t"
            )
        )

        request = requests[0]
        assert request.method == "PATCH"
        assert request.url.path == "/repos/acme/widgets/check-runs/11"
        assert json.loads(request.content) == {
            "output": {"title": "deploy-to-balena", "summary": "s", "text": "t"}
        }


class TestCreateTag:
    def test_creates_tag_ref(self):
        requests: List[httpx.Request] = []
        response = httpx.Response(
            201,
            json={
                "ref": "refs/tags/v1.2.3",
                "url": "https://api.github.com/repos/acme/widgets/git/refs/tags/v1.2.3",
                "object": {"sha": "abc123", "type": "commit"},
            },
        )
        client = _make_client(_recording([response], requests))

        url = run_async(client.create_tag("acme", "widgets", "v1.2.3", "abc123"))

        assert url == "https://api.github.com/repos/acme/widgets/git/refs/tags/v1.2.3"
        assert requests[0].url.path == "/repos/acme/widgets/git/refs"
        assert json.loads(requests[0].content) == {"ref": "refs/tags/v1.2.3", "sha": "abc123"}

    def test_existing_tag_is_not_an_error(self):
        response = httpx.Response(422, json={"message": "Reference already exists"})
        client = _make_client(_recording([response], []))

        assert run_async(client.create_tag("acme", "widgets", "v1.2.3", "abc123")) is None

    def test_other_validation_errors_propagate(self):
        response = httpx.Response(422, json={"message": "Object does not exist"})
        client = _make_client(_recording([response], []))

        with pytest.raises(GitHubAPIError) as exc_info:
            run_async(client.create_tag("acme", "widgets", "v1.2.3", "deadbeef"))

        assert exc_info.value.status_code == 422


class TestRetries:
    def test_retries_server_errors(self):
        requests: List[httpx.Request] = []
        client = _make_client(
            _recording(
                [httpx.Response(502), httpx.Response(503), httpx.Response(200, json=CHECK_RUNS)],
                requests,
            )
        )

        runs = run_async(client.list_check_runs("acme", "widgets", "fba0317"))

        assert len(requests) == 3
        assert len(runs) == 2

    def test_gives_up_after_max_retries(self):
        requests: List[httpx.Request] = []
        client = _make_client(
            _recording([httpx.Response(500) for _ in range(3)], requests),
            max_retries=2,
        )

        with pytest.raises(GitHubAPIError) as exc_info:
            run_async(client.list_check_runs("acme", "widgets", "fba0317"))

        assert exc_info.value.status_code == 500
        assert len(requests) == 3

    def test_client_errors_are_not_retried(self):
        requests: List[httpx.Request] = []
        client = _make_client(_recording([httpx.Response(404, text="Not Found")], requests))

        with pytest.raises(GitHubAPIError):
            run_async(client.list_check_runs("acme", "widgets", "fba0317"))

        assert len(requests) == 1

    def test_rate_limit(self):
        response = httpx.Response(
            403,
            headers={"x-ratelimit-remaining": "0", "retry-after": "30"},
            text="API rate limit exceeded",
        )
        client = _make_client(_recording([response], []))

        with pytest.raises(RateLimitError) as exc_info:
            run_async(client.list_check_runs("acme", "widgets", "fba0317"))

        assert exc_info.value.retry_after == 30

    def test_connection_errors_are_retried(self):
        calls: List[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json=CHECK_RUNS)

        client = _make_client(handler)

        runs = run_async(client.list_check_runs("acme", "widgets", "fba0317"))

        assert len(calls) == 2
        assert len(runs) == 2

    def test_backoff_is_capped(self):
        client = GitHubClient(token="t", base_delay=1.0, max_delay=5.0)

        for attempt in range(10):
            assert 0 <= client._calculate_backoff(attempt) <= 5.0
