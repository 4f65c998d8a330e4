"""Tests for the pull request collection pipeline.

The API client is faked; the cache is the real two-tier CacheManager rooted in
a temporary directory.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from gitspark_core import collector as collector_module
from gitspark_core.ado.client import ConnectionResult
from gitspark_core.collector import CollectorOptions, CollectorState, PullRequestCollector
from gitspark_core.config import AzureDevOpsConfig, ConfigLayer
from gitspark_core.errors import ClientError, CollectorStateError, ConfigurationError, ConnectivityError
from gitspark_core.models import AssociationMethod, CommitRecord, Identity, PullRequestRecord, PullRequestStatus

T0 = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
ALICE = Identity(display_name="Alice", unique_name="alice@contoso.com")
CONFIG = AzureDevOpsConfig(organization="contoso", project="web", repository="api", personal_access_token="pat")


class FakeClient:
    def __init__(self, pull_requests=(), connected=True, error=None):
        self.pull_requests = list(pull_requests)
        self.connected = connected
        self.error = error
        self.fetch_calls = []

    def test_connection(self):
        if self.connected:
            return ConnectionResult(success=True, response_time_ms=12.0)
        return ConnectionResult(success=False, response_time_ms=30000.0, error="HTTP 401: Unauthorized")

    def fetch_pull_requests(self, filters):
        self.fetch_calls.append(filters)
        if self.error:
            raise self.error
        return list(self.pull_requests)


def _pr(pr_id, title="Change"):
    return PullRequestRecord(
        id=pr_id,
        title=title,
        created_by=ALICE,
        status=PullRequestStatus.COMPLETED,
        creation_date=T0 - timedelta(days=1),
        closed_date=T0,
        source_ref_name=f"refs/heads/feature-{pr_id}",
    )


COMMITS = [
    CommitRecord(
        hash="m1",
        author="Build Service",
        author_email="build@contoso.com",
        date=T0,
        message="Merged PR 1: Change",
        is_merge=True,
    )
]


def _collector(tmp_path, client, options=None, progress=None, **kwargs):
    kwargs.setdefault("config", CONFIG)
    return PullRequestCollector(
        tmp_path,
        COMMITS,
        options or CollectorOptions(),
        progress=progress,
        client_factory=lambda config, progress=None: client,
        **kwargs,
    )


@pytest.fixture
def ready(tmp_path):
    """An initialized collector over PRs 1-3 and its fake client."""
    client = FakeClient([_pr(1), _pr(2), _pr(3)])
    collector = _collector(tmp_path, client)
    collector.initialize()
    yield collector, client
    collector.close()


class TestLifecycle:
    def test_collect_before_initialize(self, tmp_path):
        collector = _collector(tmp_path, FakeClient())
        with pytest.raises(CollectorStateError):
            collector.collect_pull_request_data()

    def test_connectivity_failure(self, tmp_path):
        cache = MagicMock()
        collector = _collector(tmp_path, FakeClient(connected=False), cache_factory=lambda config, path: cache)

        with pytest.raises(ConnectivityError, match="401"):
            collector.initialize()

        assert collector.state is CollectorState.FAILED
        cache.close.assert_called_once()
        with pytest.raises(CollectorStateError):
            collector.collect_pull_request_data()

    def test_configuration_error_without_preset(self, tmp_path, monkeypatch):
        for name in ("AZURE_DEVOPS_ORG", "AZURE_DEVOPS_ORGANIZATION", "AZURE_DEVOPS_PROJECT"):
            monkeypatch.delenv(name, raising=False)
        collector = _collector(tmp_path, FakeClient(), options=CollectorOptions(detect_remote=False), config=None)

        with pytest.raises(ConfigurationError):
            collector.initialize()
        assert collector.state is CollectorState.FAILED

    def test_resolves_configuration_from_cli_layer(self, tmp_path):
        options = CollectorOptions(
            detect_remote=False,
            cli_layer=ConfigLayer(source="cli", organization="fabrikam", project="mobile"),
        )
        collector = _collector(tmp_path, FakeClient(), options=options, config=None)
        collector.initialize()
        try:
            assert collector.config.organization == "fabrikam"
            assert collector.state is CollectorState.READY
        finally:
            collector.close()


class TestCollection:
    def test_fresh_fetch(self, ready):
        collector, client = ready
        result = collector.collect_pull_request_data()

        assert result.from_cache is False
        assert [r.pull_request.id for r in result.records] == [1, 2, 3]
        first = result.records[0]
        assert first.best_association.method is AssociationMethod.MERGE_COMMIT
        assert first.metadata.cache_source == "api"
        assert first.metadata.api_version == "7.0"
        assert len(first.metadata.limitations) == 4
        assert first.metrics.time_to_merge_hours == pytest.approx(24.0)
        assert collector.state is CollectorState.READY

    def test_second_run_served_from_cache(self, ready):
        collector, client = ready
        collector.collect_pull_request_data()
        result = collector.collect_pull_request_data()

        assert result.from_cache is True
        assert len(client.fetch_calls) == 1
        assert [r.pull_request.id for r in result.records] == [1, 2, 3]
        assert all(r.metadata.cache_hit and r.metadata.cache_source == "cache" for r in result.records)

    def test_cache_survives_new_collector(self, tmp_path):
        first = _collector(tmp_path, FakeClient([_pr(1)]))
        first.initialize()
        first.collect_pull_request_data()
        first.close()

        second_client = FakeClient([_pr(1)])
        second = _collector(tmp_path, second_client)
        second.initialize()
        result = second.collect_pull_request_data()
        second.close()

        assert result.from_cache is True
        assert second_client.fetch_calls == []

    def test_no_cache_forces_fetch(self, ready):
        collector, client = ready
        collector.collect_pull_request_data()
        collector.options.no_cache = True

        result = collector.collect_pull_request_data()

        assert result.from_cache is False
        assert len(client.fetch_calls) == 2

    def test_stale_cache_refetched(self, ready, monkeypatch):
        collector, client = ready
        collector.collect_pull_request_data()

        later = datetime.now(timezone.utc) + timedelta(hours=2)
        monkeypatch.setattr(collector_module, "utcnow", lambda: later)
        result = collector.collect_pull_request_data()

        assert result.from_cache is False
        assert len(client.fetch_calls) == 2

    def test_one_bad_pull_request_does_not_stop_the_batch(self, ready):
        collector, _ = ready

        def associate(pr):
            if pr.id == 2:
                raise RuntimeError("boom")
            return []

        collector.linker = MagicMock(**{"find_associated_commits.side_effect": associate})
        result = collector.collect_pull_request_data()

        assert [r.pull_request.id for r in result.records] == [1, 3]
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.pr_id == 2
        assert isinstance(failure.cause, RuntimeError)
        assert "boom" in str(failure)

    def test_fetch_failure_propagates_and_collector_stays_usable(self, tmp_path):
        client = FakeClient(error=ClientError("HTTP 500", url="https://dev.azure.com/x", status_code=500))
        collector = _collector(tmp_path, client)
        collector.initialize()

        with pytest.raises(ClientError):
            collector.collect_pull_request_data()
        assert collector.state is CollectorState.READY
        collector.close()

    def test_progress_reported(self, tmp_path):
        phases = []
        collector = _collector(
            tmp_path, FakeClient([_pr(1)]), progress=lambda phase, current, total: phases.append(phase)
        )
        collector.initialize()
        collector.collect_pull_request_data()
        collector.close()

        assert phases[0] == "Resolving Azure DevOps configuration"
        assert "Processing PR 1/1" in phases
        assert phases[-1] == "Azure DevOps data collection complete"

    def test_cache_stats_after_collection(self, ready):
        collector, _ = ready
        collector.collect_pull_request_data()
        report = collector.get_cache_stats()

        assert report.enabled is True
        assert report.manager.writes.total == 4  # three PRs plus the processed collection
        assert report.file.total_files == 4


class TestFilters:
    NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)

    def test_days_window(self, tmp_path):
        collector = _collector(tmp_path, FakeClient(), options=CollectorOptions(days=30))
        filters = collector.build_filters(now=self.NOW)
        assert filters.created_after == self.NOW - timedelta(days=30)
        assert filters.statuses == ["completed", "active"]

    def test_since_overrides_days(self, tmp_path):
        since = datetime(2024, 1, 1, tzinfo=timezone.utc)
        until = datetime(2024, 2, 1, tzinfo=timezone.utc)
        collector = _collector(tmp_path, FakeClient(), options=CollectorOptions(since=since, until=until, days=7))
        filters = collector.build_filters(now=self.NOW)
        assert filters.created_after == since
        assert filters.created_before == until
