"""Tests for the Azure DevOps REST client.

HTTP is replaced by a fake session; sleeping is recorded instead of performed.
"""

import base64
from datetime import datetime, timedelta, timezone

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from gitspark_core.ado import client as client_module
from gitspark_core.ado.client import (
    AzureDevOpsClient,
    PullRequestFilters,
    auth_headers,
    build_api_root,
)
from gitspark_core.config import ApiConfig, AzureDevOpsConfig, PaginationConfig, RateLimitConfig
from gitspark_core.errors import ClientError
from gitspark_core.utils.dates import parse_timestamp

UTC = timezone.utc


class FakeResponse:
    def __init__(self, body=None, status_code=200, headers=None, reason="OK", invalid_json=False):
        self._body = body if body is not None else {}
        self.status_code = status_code
        self.reason = reason
        self.headers = CaseInsensitiveDict(headers or {})
        self._invalid_json = invalid_json

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._invalid_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._body


class FakeSession:
    """Answers each GET through ``handler(url, params)``; a raised exception propagates."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "headers": headers, "timeout": timeout})
        result = self.handler(url, params or {})
        if isinstance(result, Exception):
            raise result
        return result


def _config(**api_overrides):
    api = ApiConfig(rate_limit=RateLimitConfig(enabled=False), **api_overrides)
    return AzureDevOpsConfig(
        organization="contoso",
        project="web",
        repository="api",
        personal_access_token="pat",
        api=api,
    )


def _client(handler, config=None):
    sleeps = []
    session = FakeSession(handler)
    client = AzureDevOpsClient(
        config or _config(),
        session=session,
        sleep=sleeps.append,
        clock=lambda: 0.0,  # zero latency, so standard pages hold 50 items
    )
    return client, session, sleeps


def _pr(pr_id, created="2024-03-01T10:00:00Z", status="completed"):
    return {
        "pullRequestId": pr_id,
        "title": f"PR {pr_id}",
        "status": status,
        "creationDate": created,
        "createdBy": {"displayName": "Dev", "uniqueName": "dev@contoso.com"},
        "sourceRefName": "refs/heads/feature",
        "targetRefName": "refs/heads/main",
    }


def _is_count_request(params):
    return params.get("$top") == 1


class TestUrlsAndAuth:
    def test_organization_name_root(self):
        assert build_api_root(_config()) == "https://dev.azure.com/contoso/web/_apis"

    def test_organization_url_keeps_its_path(self):
        config = AzureDevOpsConfig(organization="https://dev.azure.com/contoso/", project="web")
        assert build_api_root(config) == "https://dev.azure.com/contoso/web/_apis"

    def test_visualstudio_host_omits_organization(self):
        config = AzureDevOpsConfig(
            organization="contoso", project="web", api=ApiConfig(base_url="https://contoso.visualstudio.com")
        )
        assert build_api_root(config) == "https://contoso.visualstudio.com/web/_apis"

    def test_project_and_repository_are_quoted(self):
        config = AzureDevOpsConfig(organization="contoso", project="My Project", repository="a/b")
        client = AzureDevOpsClient(config, session=FakeSession(lambda url, params: FakeResponse()))
        assert client.pull_requests_url == (
            "https://dev.azure.com/contoso/My%20Project/_apis/git/repositories/a%2Fb/pullrequests"
        )

    def test_pat_uses_basic_auth(self):
        header = auth_headers(_config())["Authorization"]
        assert header == "Basic " + base64.b64encode(b":pat").decode()

    def test_bearer_token(self):
        config = AzureDevOpsConfig(organization="contoso", project="web", bearer_token="aad")
        assert auth_headers(config) == {"Authorization": "Bearer aad"}

    def test_no_credentials(self):
        assert auth_headers(AzureDevOpsConfig(organization="contoso", project="web")) == {}


class TestStandardPagination:
    def test_follows_continuation_token_in_body(self):
        def handler(url, params):
            if _is_count_request(params):
                return FakeResponse({"count": 1, "value": [_pr(1)]})
            if params.get("continuationToken") == "next":
                return FakeResponse({"value": [_pr(3)]})
            return FakeResponse({"value": [_pr(1), _pr(2)], "continuationToken": "next"})

        client, session, _ = _client(handler)
        records = client.fetch_pull_requests()

        assert [r.id for r in records] == [1, 2, 3]
        assert len(session.calls) == 3

    def test_follows_continuation_header(self):
        def handler(url, params):
            if _is_count_request(params):
                return FakeResponse({"count": 1, "value": []})
            if params.get("continuationToken") == "t2":
                return FakeResponse({"value": [_pr(2)]})
            return FakeResponse({"value": [_pr(1)]}, headers={"X-MS-ContinuationToken": "t2"})

        client, _, _ = _client(handler)
        assert [r.id for r in client.fetch_pull_requests()] == [1, 2]

    def test_full_page_without_token_continues_with_skip(self):
        def handler(url, params):
            if _is_count_request(params):
                return FakeResponse({"count": 1, "value": []})
            skip = params.get("$skip", 0)
            if skip == 0:
                return FakeResponse({"value": [_pr(i) for i in range(1, 51)]})
            return FakeResponse({"value": [_pr(i) for i in range(51, 61)]})

        client, session, _ = _client(handler)
        records = client.fetch_pull_requests()

        assert len(records) == 60
        assert session.calls[-1]["params"]["$skip"] == 50

    def test_stops_at_page_limit(self, monkeypatch):
        monkeypatch.setattr(client_module, "MAX_PAGES", 3)
        counter = iter(range(1, 10_000))

        def handler(url, params):
            if _is_count_request(params):
                return FakeResponse({"count": 1, "value": []})
            return FakeResponse({"value": [_pr(next(counter))], "continuationToken": "more"})

        client, session, _ = _client(handler)
        records = client.fetch_pull_requests()

        assert len(records) == 3
        assert len(session.calls) == 4

    def test_sends_auth_and_api_version(self):
        client, session, _ = _client(lambda url, params: FakeResponse({"value": []}))
        client.fetch_pull_requests()
        call = session.calls[-1]
        assert call["params"]["api-version"] == "7.0"
        assert call["headers"]["Authorization"].startswith("Basic ")
        assert call["timeout"] == 30


class TestFilters:
    def test_multiple_statuses_filtered_locally(self):
        def handler(url, params):
            return FakeResponse(
                {"value": [_pr(1, status="completed"), _pr(2, status="abandoned"), _pr(3, status="active")]}
            )

        client, session, _ = _client(handler)
        records = client.fetch_pull_requests(PullRequestFilters(statuses=["completed", "active"]))

        assert [r.id for r in records] == [1, 3]
        assert session.calls[-1]["params"]["searchCriteria.status"] == "all"

    def test_single_status_sent_to_server(self):
        client, session, _ = _client(lambda url, params: FakeResponse({"value": []}))
        client.fetch_pull_requests(PullRequestFilters(statuses=["completed"]))
        assert session.calls[-1]["params"]["searchCriteria.status"] == "completed"

    def test_time_range_params(self):
        client, session, _ = _client(lambda url, params: FakeResponse({"value": []}))
        client.fetch_pull_requests(
            PullRequestFilters(
                created_after=datetime(2024, 1, 1, tzinfo=UTC),
                created_before=datetime(2024, 2, 1, tzinfo=UTC),
                target_ref_name="refs/heads/main",
            )
        )
        params = session.calls[-1]["params"]
        assert params["searchCriteria.minTime"] == "2024-01-01T00:00:00Z"
        assert params["searchCriteria.maxTime"] == "2024-02-01T00:00:00Z"
        assert params["searchCriteria.queryTimeRangeType"] == "created"
        assert params["searchCriteria.targetRefName"] == "refs/heads/main"

    def test_malformed_items_are_skipped(self):
        broken = {"pullRequestId": 2, "title": "no date"}

        def handler(url, params):
            return FakeResponse({"value": [_pr(1), broken, _pr(3, status="bogus")]})

        client, _, _ = _client(handler)
        records = client.fetch_pull_requests()

        assert [r.id for r in records] == [1]
        assert client.skipped_items == 2


class TestRetries:
    def test_network_errors_are_retried(self):
        attempts = iter([requests.ConnectionError("reset"), requests.Timeout("slow"), FakeResponse({"value": []})])
        client, session, sleeps = _client(lambda url, params: next(attempts))

        result = client.test_connection()

        assert result.success is True
        assert len(session.calls) == 3
        assert sleeps == [1, 2]

    def test_retryable_status_exhausts_budget(self):
        client, session, sleeps = _client(
            lambda url, params: FakeResponse(status_code=503, reason="Service Unavailable")
        )

        with pytest.raises(ClientError) as exc_info:
            client._request(client.pull_requests_url)

        error = exc_info.value
        assert len(session.calls) == 4
        assert sleeps == [1, 2, 4]
        assert error.url == client.pull_requests_url
        assert error.status_code == 503
        assert isinstance(error.__cause__, ClientError)

    def test_rate_limited_response_is_retried(self):
        attempts = iter([FakeResponse(status_code=429, reason="Too Many Requests"), FakeResponse({"value": []})])
        client, session, sleeps = _client(lambda url, params: next(attempts))
        assert client.test_connection().success is True
        assert sleeps == [1]

    def test_client_error_status_fails_immediately(self):
        client, session, sleeps = _client(lambda url, params: FakeResponse(status_code=401, reason="Unauthorized"))

        result = client.test_connection()

        assert result.success is False
        assert "401" in result.error
        assert len(session.calls) == 1
        assert sleeps == []

    def test_fetch_failure_propagates(self):
        client, _, _ = _client(lambda url, params: FakeResponse(status_code=404, reason="Not Found"))
        with pytest.raises(ClientError) as exc_info:
            client.fetch_pull_requests()
        assert exc_info.value.status_code == 404
        assert exc_info.value.url == client.pull_requests_url

    def test_invalid_json(self):
        client, _, _ = _client(lambda url, params: FakeResponse(invalid_json=True))
        with pytest.raises(ClientError) as exc_info:
            client._request(client.pull_requests_url)
        assert exc_info.value.code == "INVALID_RESPONSE"

    def test_rate_limiter_consulted_before_every_attempt(self, mocker):
        attempts = iter([requests.ConnectionError("reset"), FakeResponse({"value": []})])
        client, _, _ = _client(lambda url, params: next(attempts))
        wait = mocker.patch.object(client.rate_limiter, "wait_if_needed")

        client.test_connection()

        assert wait.call_count == 2


class TestTimePartitions:
    NOW = datetime(2024, 6, 15, 12, 0, tzinfo=UTC)

    def _partitions(self, start, end):
        client, _, _ = _client(lambda url, params: FakeResponse())
        return client.calculate_time_partitions(PullRequestFilters(created_after=start, created_before=end))

    @staticmethod
    def _assert_contiguous(partitions, start, end):
        assert partitions[0].start == start
        assert partitions[-1].end == end
        for left, right in zip(partitions, partitions[1:]):
            assert left.end == right.start
            assert left.start < left.end

    def test_monthly_above_ninety_days(self):
        start = datetime(2024, 1, 10, tzinfo=UTC)
        end = datetime(2024, 6, 20, tzinfo=UTC)
        partitions = self._partitions(start, end)

        self._assert_contiguous(partitions, start, end)
        assert partitions[0].end == datetime(2024, 2, 1, tzinfo=UTC)
        assert len(partitions) == 6

    def test_monthly_crosses_year_end(self):
        start = datetime(2023, 11, 5, tzinfo=UTC)
        end = datetime(2024, 3, 1, tzinfo=UTC)
        partitions = self._partitions(start, end)
        self._assert_contiguous(partitions, start, end)
        assert datetime(2024, 1, 1, tzinfo=UTC) in [p.start for p in partitions]

    def test_weekly_between_thirty_and_ninety_days(self):
        start = datetime(2024, 1, 1, tzinfo=UTC)
        end = datetime(2024, 2, 15, tzinfo=UTC)
        partitions = self._partitions(start, end)

        self._assert_contiguous(partitions, start, end)
        assert all(p.end - p.start <= timedelta(days=7) for p in partitions)
        assert len(partitions) == 7

    def test_single_partition_for_short_ranges(self):
        start = datetime(2024, 1, 1, tzinfo=UTC)
        end = datetime(2024, 1, 20, tzinfo=UTC)
        assert len(self._partitions(start, end)) == 1

    def test_defaults_to_last_ninety_days(self):
        client, _, _ = _client(lambda url, params: FakeResponse())
        partitions = client.calculate_time_partitions(PullRequestFilters(), now=self.NOW)
        self._assert_contiguous(partitions, self.NOW - timedelta(days=90), self.NOW)

    def test_partitioned_fetch_is_complete_and_deduplicated(self):
        start = datetime(2024, 1, 1, tzinfo=UTC)
        end = datetime(2024, 3, 1, tzinfo=UTC)
        created = [start + timedelta(days=d) for d in range(0, 60, 3)]
        dataset = [_pr(i + 1, created=d.isoformat()) for i, d in enumerate(created)]

        def handler(url, params):
            if _is_count_request(params):
                return FakeResponse({"count": 6000, "value": []})
            low = parse_timestamp(params["searchCriteria.minTime"])
            high = parse_timestamp(params["searchCriteria.maxTime"])
            # Inclusive on both ends, so boundary records come back twice.
            return FakeResponse({"value": [p for p in dataset if low <= parse_timestamp(p["creationDate"]) <= high]})

        client, session, sleeps = _client(handler)
        records = client.fetch_pull_requests(PullRequestFilters(created_after=start, created_before=end))

        partitions = client.calculate_time_partitions(PullRequestFilters(created_after=start, created_before=end))
        assert sorted(r.id for r in records) == list(range(1, len(dataset) + 1))
        assert len(records) == len(dataset)
        assert sleeps == [1.0] * (len(partitions) - 1)

    def test_partitioning_can_be_disabled(self):
        config = _config(pagination=PaginationConfig(enable_time_partitioning=False))

        def handler(url, params):
            if _is_count_request(params):
                return FakeResponse({"count": 6000, "value": []})
            return FakeResponse({"value": [_pr(1)]})

        client, session, sleeps = _client(handler, config=config)
        assert [r.id for r in client.fetch_pull_requests()] == [1]
        assert len(session.calls) == 2
