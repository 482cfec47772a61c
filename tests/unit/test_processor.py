"""Tests for normalization and catalog upserts."""

from datetime import date

import pytest
from structlog.testing import CapturingLogger

from grants_engine import processor as processor_module
from grants_engine.core.deduplicator import generate_fingerprint
from grants_engine.core.models import JobStatus, JobTrigger
from grants_engine.processor import Processor
from grants_engine.storage import GrantStore, JobStore

from conftest import make_record, make_source


@pytest.fixture
def source(registry):
    return registry.register(make_source("ford", funder_name="Ford Foundation"))


@pytest.fixture
def jobs(db):
    return JobStore(db)


@pytest.fixture
def grants(db):
    return GrantStore(db)


def new_job(jobs, clock, source_id="ford"):
    """Create a job, finishing any active one for the source."""
    for active in jobs.active(source_id):
        jobs.finish(active.id, JobStatus.SUCCESS, clock.now(), 0, 1)
    return jobs.create(source_id, JobTrigger.MANUAL, clock.now())


class TestNormalize:
    """Tests for Processor.normalize."""

    def test_fields(self, processor, source, clock):
        """Test raw strings become typed grant fields."""
        record = make_record(
            "  Community   Health Fund ",
            description="Public health programs",
            deadline="March 31, 2025",
            funding_amount="$10,000 - $50,000",
            eligibility="Nonprofits <b>only</b>",
            application_url="https://ford.example.org/apply",
        )

        item = processor.normalize(record, source, "job-1", clock.now())
        grant = item.grant

        assert grant.title == "Community Health Fund"
        assert grant.amount_min == 10_000
        assert grant.amount_max == 50_000
        assert grant.currency == "USD"
        assert grant.deadline == date(2025, 3, 31)
        assert grant.eligibility == "Nonprofits only"
        assert grant.category == "HEALTHCARE_PUBLIC_HEALTH"
        assert grant.created_by_job_id == "job-1"

    def test_source_funder_fallback(self, processor, source, clock):
        """Test the source's funder is used when the page names none."""
        item = processor.normalize(make_record("Arts Grant"), source, "job-1", clock.now())

        assert item.funder_name == "Ford Foundation"
        assert item.grant.fingerprint == generate_fingerprint("Arts Grant", "Ford Foundation", "ford")

    def test_source_category_wins(self, processor, registry, clock):
        """Test a configured category overrides inference."""
        source = registry.register(make_source("arts", category="ARTS_CULTURE"))
        item = processor.normalize(make_record("Medical research"), source, "job-1", clock.now())

        assert item.grant.category == "ARTS_CULTURE"

    def test_blank_title_skipped(self, processor, source, clock):
        """Test records without a usable title are dropped."""
        assert processor.normalize(make_record("   "), source, "job-1", clock.now()) is None

    def test_inverted_amount_rejected(self, processor, source, clock, monkeypatch):
        """Test a record whose minimum exceeds its maximum is dropped."""
        monkeypatch.setattr(processor_module, "parse_funding_range", lambda text: (50_000, 10_000))

        assert processor.normalize(make_record("Arts Grant"), source, "job-1", clock.now()) is None

    def test_quality_warnings_logged(self, processor, source, clock, monkeypatch):
        """Test suspicious but valid records are kept and logged."""
        captured = CapturingLogger()
        monkeypatch.setattr(processor_module, "logger", captured)
        record = make_record("Arts Grant", description="Details coming soon", deadline="2024-06-01")

        item = processor.normalize(record, source, "job-1", clock.now())

        assert item is not None
        call = captured.calls[-1]
        assert call.method_name == "info"
        assert call.args == ("record_quality_warnings",)
        assert call.kwargs["warnings"] == ["deadline_past", "placeholder_description"]


class TestIngest:
    """Tests for Processor.ingest."""

    async def test_insert_then_update(self, processor, source, jobs, grants, clock):
        """Test the same grant scraped twice is one catalog row."""
        first_job = new_job(jobs, clock)
        first = await processor.ingest("ford", first_job.id, [make_record("Arts Grant")])

        clock.advance(3600)
        second_job = new_job(jobs, clock)
        second = await processor.ingest(
            "ford", second_job.id, [make_record("Arts  grant", description="Updated text")]
        )

        assert (first.inserted, first.updated) == (1, 0)
        assert (second.inserted, second.updated) == (0, 1)
        assert grants.count() == 1

        grant = grants.get_by_fingerprint(generate_fingerprint("Arts Grant", "Ford Foundation", "ford"))
        assert grant.times_seen == 2
        assert grant.description == "Updated text"
        assert grant.created_by_job_id == first_job.id
        assert grant.last_job_id == second_job.id
        assert grant.updated_at > grant.created_at

    async def test_counts_written_to_job(self, processor, source, jobs, clock):
        """Test job totals match what was committed."""
        job = new_job(jobs, clock)
        records = [make_record(f"Grant {i}") for i in range(5)] + [make_record("")]

        result = await processor.ingest("ford", job.id, records)

        stored = jobs.get(job.id)
        assert (result.found, result.inserted, result.skipped) == (5, 5, 1)
        assert (stored.total_found, stored.total_inserted, stored.total_updated) == (5, 5, 0)

    async def test_batches(self, db, source, jobs, grants, clock):
        """Test records spanning several batches all land."""
        processor = Processor(db, clock=clock, batch_size=2)
        job = new_job(jobs, clock)

        result = await processor.ingest("ford", job.id, [make_record(f"Grant {i}") for i in range(5)])

        assert result.found == 5
        assert grants.count(source_id="ford") == 5
        assert jobs.get(job.id).total_found == 5

    async def test_funder_matched_case_insensitively(self, processor, source, jobs, grants, clock):
        """Test funder names differing only in case share one funder."""
        job = new_job(jobs, clock)
        await processor.ingest("ford", job.id, [
            make_record("Grant A", funder_name="Gates Foundation"),
            make_record("Grant B", funder_name="gates foundation."),
            make_record("Grant C"),
        ])

        # Gates plus the source's own funder
        assert grants.count_funders() == 2

    async def test_empty_records(self, processor, source, jobs, clock):
        """Test an empty listing writes nothing."""
        job = new_job(jobs, clock)
        result = await processor.ingest("ford", job.id, [])

        assert result.found == 0
        assert jobs.get(job.id).total_found == 0

    async def test_rejected_records_skipped(self, processor, source, jobs, clock, monkeypatch):
        """Test records failing business rules are counted as skipped."""
        monkeypatch.setattr(processor_module, "parse_funding_range", lambda text: (50_000, 10_000))
        job = new_job(jobs, clock)

        result = await processor.ingest("ford", job.id, [make_record("Arts Grant")])

        assert (result.found, result.skipped) == (0, 1)
        assert jobs.get(job.id).total_found == 0

    async def test_reingest_same_job_not_double_counted(self, processor, source, jobs, grants, clock):
        """Test a retried attempt re-ingesting its listing keeps job totals per grant."""
        job = new_job(jobs, clock)
        records = [make_record("Grant A"), make_record("Grant B")]

        first = await processor.ingest("ford", job.id, records)
        second = await processor.ingest("ford", job.id, [
            make_record("Grant A", description="Corrected text"),
            make_record("Grant B"),
        ])

        stored = jobs.get(job.id)
        assert (first.found, first.inserted) == (2, 2)
        assert (second.found, second.inserted, second.updated) == (0, 0, 0)
        assert (stored.total_found, stored.total_inserted, stored.total_updated) == (2, 2, 0)

        grant = grants.get_by_fingerprint(generate_fingerprint("Grant A", "Ford Foundation", "ford"))
        assert grant.description == "Corrected text"
        assert grant.times_seen == 1

    async def test_duplicate_in_listing_counted_once(self, processor, source, jobs, clock):
        """Test a grant listed twice on one page counts once."""
        job = new_job(jobs, clock)

        result = await processor.ingest("ford", job.id, [make_record("Grant A"), make_record("grant a")])

        assert (result.found, result.inserted) == (1, 1)
