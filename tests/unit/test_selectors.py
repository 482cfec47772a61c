"""Tests for CSS selector extraction and fingerprinting."""

from grants_engine.core.deduplicator import generate_fingerprint
from grants_engine.core.selectors import extract_records

from conftest import LISTING_HTML, make_selectors


BASE_URL = "https://funder.example.org/grants"


class TestExtractRecords:
    """Tests for extract_records function."""

    def test_extracts_all_containers(self):
        """Test each container becomes one record."""
        result = extract_records(LISTING_HTML, make_selectors(), BASE_URL)

        assert result.containers == 2
        assert [r.title for r in result.records] == [
            "Community Health Innovation Fund",
            "STEM Education Grants",
        ]

    def test_optional_fields(self):
        """Test optional selectors fill raw fields verbatim."""
        record = extract_records(LISTING_HTML, make_selectors(), BASE_URL).records[0]

        assert record.description == "Support for public health programs in rural areas."
        assert record.deadline == "March 31, 2025"
        assert record.funding_amount == "$10,000 - $50,000"
        assert record.funder_name == "Ford Foundation"
        assert record.source_url == BASE_URL

    def test_relative_urls_resolved(self):
        """Test application links become absolute."""
        records = extract_records(LISTING_HTML, make_selectors(), BASE_URL).records

        assert records[0].application_url == "https://funder.example.org/grants/health-innovation"
        assert records[1].application_url == "https://example.org/stem"

    def test_missing_optional_field(self):
        """Test absent optional element yields None."""
        record = extract_records(LISTING_HTML, make_selectors(), BASE_URL).records[1]
        assert record.funder_name is None

    def test_container_without_title_skipped(self):
        """Test containers lacking a title are dropped."""
        html = """
        <div class="grant"><h3 class="title">Kept</h3></div>
        <div class="grant"><p>No title here</p></div>
        """
        result = extract_records(html, make_selectors(), BASE_URL)

        assert result.containers == 2
        assert [r.title for r in result.records] == ["Kept"]

    def test_container_is_title(self):
        """Test a container matching the title selector itself."""
        html = '<ul><li class="grant title">Open Call 2025</li></ul>'
        result = extract_records(html, make_selectors(), BASE_URL)
        assert [r.title for r in result.records] == ["Open Call 2025"]

    def test_empty_body(self):
        """Test empty document is flagged, not parsed."""
        result = extract_records("   ", make_selectors(), BASE_URL)

        assert result.records == []
        assert result.body_empty is True

    def test_empty_marker(self):
        """Test empty marker detection."""
        html = '<html><body><p class="none">No open opportunities.</p></body></html>'
        result = extract_records(html, make_selectors(empty_marker="p.none"), BASE_URL)

        assert result.records == []
        assert result.empty_marker_found is True
        assert result.body_empty is False


class TestGenerateFingerprint:
    """Tests for generate_fingerprint function."""

    def test_deterministic(self):
        """Test same inputs give same hash."""
        a = generate_fingerprint("Arts Grant", "Ford Foundation", "src")
        b = generate_fingerprint("Arts Grant", "Ford Foundation", "src")
        assert a == b
        assert len(a) == 64

    def test_normalized_title_and_funder(self):
        """Test case, spacing and punctuation do not matter."""
        a = generate_fingerprint("Arts  Grant!", "Ford Foundation.", "src")
        b = generate_fingerprint("arts grant", "ford foundation", "src")
        assert a == b

    def test_source_distinguishes(self):
        """Test the same grant from two sources stays distinct."""
        a = generate_fingerprint("Arts Grant", "Ford Foundation", "src_a")
        b = generate_fingerprint("Arts Grant", "Ford Foundation", "src_b")
        assert a != b

    def test_funder_distinguishes(self):
        """Test different funders give different hashes."""
        a = generate_fingerprint("Arts Grant", "Ford Foundation", "src")
        b = generate_fingerprint("Arts Grant", "", "src")
        assert a != b
