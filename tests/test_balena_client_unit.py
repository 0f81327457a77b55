"""Unit tests for the balena API client."""

import json
from typing import Callable, List

import httpx
import pytest

from conftest import run_async
from deploy_to_balena.balena import (
    BalenaAPIError,
    BalenaClient,
    odata_string,
    release_tags_filter,
)


API_URL = "https://api.balena-cloud.com/"


def _make_client(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> BalenaClient:
    kwargs.setdefault("base_delay", 0.0)
    return BalenaClient(API_URL, "balena_token", transport=httpx.MockTransport(handler), **kwargs)


def _recording(responses: List[httpx.Response], requests: List[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responses.pop(0)

    return handler


class TestFilters:
    def test_odata_string_escapes_quotes(self):
        assert odata_string("it's") == "'it''s'"

    def test_release_tags_filter(self):
        expression = release_tags_filter(
            "Acme/Fleet",
            {"balena-ci-commit-sha": "abc123"},
            exclude_tag_keys=["balena-ci-id"],
        )

        assert expression == (
            "belongs_to__application/any(a:a/slug eq 'acme/fleet') and "
            "status eq 'success' and "
            "release_tag/any(rt:(rt/tag_key eq 'balena-ci-commit-sha') and (rt/value eq 'abc123')) and "
            "not(release_tag/any(rt:rt/tag_key eq 'balena-ci-id'))"
        )


class TestInitialize:
    def test_verifies_token(self):
        requests: List[httpx.Request] = []
        handler = _recording([httpx.Response(200, json={"id": 1, "actorType": "user"})], requests)

        client = run_async(
            BalenaClient.initialize(
                API_URL, "balena_token", transport=httpx.MockTransport(handler)
            )
        )

        assert isinstance(client, BalenaClient)
        assert requests[0].url.path == "/actor/v1/whoami"
        assert requests[0].headers["Authorization"] == "Bearer balena_token"

    def test_rejected_token_fails(self):
        handler = _recording([httpx.Response(401, text="Unauthorized")], [])

        with pytest.raises(BalenaAPIError) as exc_info:
            run_async(
                BalenaClient.initialize(
                    API_URL, "bad", transport=httpx.MockTransport(handler)
                )
            )

        assert exc_info.value.status_code == 401


class TestReleases:
    def test_get_releases_by_tags(self):
        requests: List[httpx.Request] = []
        body = {
            "d": [
                {"id": 2008424, "is_final": False, "created_at": "2024-01-02T00:00:00.000Z"},
                {"id": 2008400, "is_final": True, "created_at": "2024-01-01T00:00:00.000Z"},
            ]
        }
        client = _make_client(_recording([httpx.Response(200, json=body)], requests))

        releases = run_async(
            client.get_releases_by_tags(
                "acme/fleet",
                {"balena-ci-commit-sha": "fba0317", "balena-ci-id": "4423422"},
            )
        )

        assert [(r.id, r.is_final) for r in releases] == [(2008424, False), (2008400, True)]
        assert releases[0].created_at is not None
        params = requests[0].url.params
        assert requests[0].url.path == "/v7/release"
        assert params["$orderby"] == "created_at desc"
        assert "(rt/value eq '4423422')" in params["$filter"]

    def test_get_release_version(self):
        requests: List[httpx.Request] = []
        body = {"d": [{"raw_version": "0.0.0-1639156200222"}]}
        client = _make_client(_recording([httpx.Response(200, json=body)], requests))

        version = run_async(client.get_release_version(1200842))

        assert version == "0.0.0-1639156200222"
        assert requests[0].url.path == "/v7/release(1200842)"
        assert requests[0].url.params["$select"] == "raw_version"

    def test_get_release_version_of_unknown_release(self):
        client = _make_client(_recording([httpx.Response(200, json={"d": []})], []))

        with pytest.raises(BalenaAPIError):
            run_async(client.get_release_version(1))


class TestReleaseTags:
    def test_creates_tag(self):
        requests: List[httpx.Request] = []
        client = _make_client(_recording([httpx.Response(201, json={"id": 5})], requests))

        run_async(client.set_release_tag(42, "balena-ci-commit-sha", "abc123"))

        assert requests[0].method == "POST"
        assert requests[0].url.path == "/v7/release_tag"
        assert json.loads(requests[0].content) == {
            "release": 42,
            "tag_key": "balena-ci-commit-sha",
            "value": "abc123",
        }

    def test_existing_tag_is_updated(self):
        requests: List[httpx.Request] = []
        client = _make_client(
            _recording(
                [httpx.Response(409, text="Unique key constraint violated"), httpx.Response(200)],
                requests,
            )
        )

        run_async(client.set_release_tag(42, "balena-ci-commit-sha", "abc123"))

        assert [r.method for r in requests] == ["POST", "PATCH"]
        assert requests[1].url.params["$filter"] == (
            "release eq 42 and tag_key eq 'balena-ci-commit-sha'"
        )
        assert json.loads(requests[1].content) == {"value": "abc123"}

    def test_other_errors_propagate(self):
        client = _make_client(_recording([httpx.Response(400, text="Bad Request")], []))

        with pytest.raises(BalenaAPIError):
            run_async(client.set_release_tag(42, "balena-ci-commit-sha", "abc123"))


class TestRetries:
    def test_retries_server_errors(self):
        requests: List[httpx.Request] = []
        body = {"d": [{"raw_version": "1.0.0"}]}
        client = _make_client(
            _recording([httpx.Response(503), httpx.Response(200, json=body)], requests)
        )

        assert run_async(client.get_release_version(1)) == "1.0.0"
        assert len(requests) == 2

    def test_gives_up_on_connection_errors(self):
        calls: List[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            raise httpx.ConnectError("connection refused", request=request)

        client = _make_client(handler, max_retries=2)

        with pytest.raises(BalenaAPIError):
            run_async(client.get_release_version(1))

        assert len(calls) == 3
