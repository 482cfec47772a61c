"""Tests for dashboard aggregation."""

from datetime import timedelta

import pytest

from grants_engine.core.models import JobStatus, JobTrigger, SourceStatus
from grants_engine.errors import BadRequestError
from grants_engine.monitoring import DashboardAggregator, parse_time_range

from conftest import make_source


@pytest.fixture
def aggregator(registry, clock):
    return DashboardAggregator(registry, clock=clock)


def finished_job(registry, clock, source_id, status, duration_ms=1000, inserted=0, updated=0, error=None):
    job = registry.jobs.create(source_id, JobTrigger.SCHEDULED, clock.now())
    if inserted or updated:
        with registry.db.transaction() as conn:
            registry.jobs.record_progress(conn, job.id, inserted + updated, inserted, updated)
    registry.jobs.finish(
        job.id,
        status,
        clock.now(),
        duration_ms,
        attempts=1,
        error=error,
        error_type="fetch" if error else None,
    )
    return job


class TestParseTimeRange:
    """Tests for parse_time_range function."""

    def test_labels(self):
        """Test supported labels."""
        assert parse_time_range("24h") == ("24h", timedelta(hours=24))
        assert parse_time_range("7D") == ("7d", timedelta(days=7))
        assert parse_time_range(None) == ("24h", timedelta(hours=24))

    def test_timedelta(self):
        """Test explicit windows."""
        assert parse_time_range(timedelta(days=30)) == ("30d", timedelta(days=30))

    @pytest.mark.parametrize("value", ["1y", "", timedelta(0)])
    def test_invalid(self, value):
        """Test unsupported ranges."""
        with pytest.raises(BadRequestError):
            parse_time_range(value)


class TestDashboard:
    """Tests for DashboardAggregator.get_dashboard."""

    def test_no_jobs(self, registry, aggregator):
        """Test an idle engine reports zeros, not errors."""
        registry.register(make_source("nih"))

        dashboard = aggregator.get_dashboard("24h")

        assert dashboard.total_jobs == 0
        assert dashboard.success_rate == 0
        assert dashboard.avg_duration == 0
        assert dashboard.active_sources == 1
        assert dashboard.top_performing_sources == []

    def test_metrics(self, registry, aggregator, clock):
        """Test counts, rate, durations and catalog growth."""
        registry.register_all([make_source("nih"), make_source("nsf")])
        finished_job(registry, clock, "nih", JobStatus.SUCCESS, 1000, inserted=3, updated=1)
        finished_job(registry, clock, "nih", JobStatus.SUCCESS, 3000, inserted=0, updated=4)
        finished_job(registry, clock, "nsf", JobStatus.FAILED, 2000, error="HTTP 500")

        dashboard = aggregator.get_dashboard("24h")

        assert dashboard.total_jobs == 3
        assert dashboard.successful_jobs == 2
        assert dashboard.failed_jobs == 1
        assert dashboard.success_rate == pytest.approx(66.67)
        assert dashboard.avg_duration == pytest.approx(2000)
        assert dashboard.new_grants == 3
        assert dashboard.updated_grants == 5
        assert dashboard.grants_scraped == 8

    def test_running_jobs_excluded_from_duration(self, registry, aggregator, clock):
        """Test in-flight jobs count but have no duration."""
        registry.register_all([make_source("nih"), make_source("nsf")])
        finished_job(registry, clock, "nih", JobStatus.SUCCESS, 500)
        registry.jobs.create("nsf", JobTrigger.MANUAL, clock.now())

        dashboard = aggregator.get_dashboard("24h")

        assert dashboard.total_jobs == 2
        assert dashboard.avg_duration == pytest.approx(500)
        assert dashboard.success_rate == pytest.approx(50.0)

    def test_time_window(self, registry, aggregator, clock):
        """Test jobs outside the window are ignored."""
        registry.register(make_source("nih"))
        finished_job(registry, clock, "nih", JobStatus.FAILED, error="old failure")
        clock.advance(timedelta(days=2).total_seconds())
        finished_job(registry, clock, "nih", JobStatus.SUCCESS)

        assert aggregator.get_dashboard("24h").total_jobs == 1
        assert aggregator.get_dashboard("7d").total_jobs == 2

    def test_top_sources(self, registry, aggregator, clock):
        """Test ranking by success ratio, then volume; inactive excluded."""
        registry.register_all([
            make_source("always"),
            make_source("mostly"),
            make_source("paused", status=SourceStatus.PAUSED),
        ])
        for _ in range(2):
            finished_job(registry, clock, "always", JobStatus.SUCCESS)
        finished_job(registry, clock, "mostly", JobStatus.SUCCESS)
        finished_job(registry, clock, "mostly", JobStatus.FAILED, error="x")
        finished_job(registry, clock, "paused", JobStatus.SUCCESS)

        top = aggregator.get_dashboard("24h").top_performing_sources

        assert [entry.source_id for entry in top] == ["always", "mostly"]
        assert top[0].success_rate == 100.0
        assert top[1].success_rate == 50.0

    def test_recent_errors(self, registry, aggregator, clock):
        """Test failures are listed newest first with their source."""
        registry.register(make_source("nih"))
        finished_job(registry, clock, "nih", JobStatus.FAILED, error="first")
        clock.advance(10)
        finished_job(registry, clock, "nih", JobStatus.FAILED, error="second")

        errors = aggregator.get_dashboard("24h").recent_errors

        assert [entry.error for entry in errors] == ["second", "first"]
        assert errors[0].source_url == registry.get("nih").url

    def test_to_dict(self, registry, aggregator, clock):
        """Test the API payload layout."""
        registry.register(make_source("nih"))
        finished_job(registry, clock, "nih", JobStatus.SUCCESS, inserted=2)

        payload = aggregator.get_dashboard("7d").to_dict()

        assert payload["timeRange"] == "7d"
        assert payload["realTimeMetrics"]["totalJobs"] == 1
        assert payload["realTimeMetrics"]["newGrants"] == 2
        assert payload["recentActivity"]["jobs"][0]["sourceId"] == "nih"
        assert payload["topPerformingSources"][0]["id"] == "nih"

    def test_flagged_sources(self, aggregator, registry):
        """Test flagged sources are surfaced."""
        registry.register(make_source("nih"))
        source = registry.get("nih")
        source.fail_count = 3
        registry.store.save_health(source)

        flagged = aggregator.get_dashboard().flagged_sources
        assert [entry["id"] for entry in flagged] == ["nih"]
