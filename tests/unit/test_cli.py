"""Tests for the command line interface."""

import json
import textwrap

import pytest
from structlog.testing import capture_logs

from grants_engine import __version__
from grants_engine.__main__ import EXIT_CONFIG_ERROR, main, main_async, parse_args
from grants_engine.config.settings import config_for_database

SEED = textwrap.dedent("""
    sources:
      - id: nih
        name: NIH funding
        url: https://nih.example.org/grants
        selectors:
          grant_container: .grant
          title: .title
      - id: nsf
        name: NSF funding
        url: https://nsf.example.org/grants
        status: PAUSED
        selectors:
          grant_container: .grant
          title: .title
""")


@pytest.fixture(autouse=True)
def logs():
    """Keep log lines off stdout, which carries the command output."""
    with capture_logs() as captured:
        yield captured


@pytest.fixture
def config(tmp_path):
    return config_for_database(tmp_path / "cli.db")


@pytest.fixture
def seed_file(tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text(SEED, encoding="utf-8")
    return path


class TestParseArgs:
    """Tests for parse_args function."""

    def test_trigger_source(self):
        """Test trigger with a source id."""
        _, args = parse_args(["trigger", "nih"])

        assert args.command == "trigger"
        assert args.source_id == "nih"
        assert not args.all

    def test_trigger_all(self):
        """Test trigger --all."""
        _, args = parse_args(["trigger", "--all"])

        assert args.all
        assert args.source_id is None

    def test_trigger_requires_target(self):
        """Test trigger without a target is rejected."""
        with pytest.raises(SystemExit):
            parse_args(["trigger"])

    def test_dashboard_range(self):
        """Test dashboard defaults and choices."""
        _, args = parse_args(["dashboard"])
        assert args.time_range == "24h"

        with pytest.raises(SystemExit):
            parse_args(["dashboard", "--time-range", "1y"])

    def test_global_flags(self):
        """Test logging flags precede the command."""
        _, args = parse_args(["--log-level", "DEBUG", "--json-logs", "status"])

        assert args.log_level == "DEBUG"
        assert args.json_logs
        assert args.command == "status"


class TestMain:
    """Tests for main exit paths that do not touch the catalog."""

    def test_version(self, capsys):
        """Test --version prints and exits cleanly."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])

        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_no_command(self, capsys):
        """Test running without a command prints help."""
        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == EXIT_CONFIG_ERROR
        assert "usage" in capsys.readouterr().out


class TestMainAsync:
    """Tests for main_async commands."""

    async def test_seed_then_status(self, config, seed_file, capsys, logs):
        """Test seeding registers sources visible in status."""
        _, args = parse_args(["seed", str(seed_file)])
        assert await main_async(args, config) == 0
        assert json.loads(capsys.readouterr().out) == {"registered": 2}
        assert any(entry["event"] == "sources_loaded" for entry in logs)

        _, args = parse_args(["status"])
        assert await main_async(args, config) == 0
        status = json.loads(capsys.readouterr().out)

        assert {source["id"] for source in status["sources"]} == {"nih", "nsf"}
        assert status["catalog"]["grants"] == 0

    async def test_dashboard(self, config, capsys):
        """Test dashboard output on an empty catalog."""
        _, args = parse_args(["dashboard", "--time-range", "7d"])

        assert await main_async(args, config) == 0
        dashboard = json.loads(capsys.readouterr().out)

        assert dashboard["timeRange"] == "7d"
        assert dashboard["realTimeMetrics"]["totalJobs"] == 0

    async def test_tick_without_sources(self, config, capsys):
        """Test a tick with nothing due succeeds with no jobs."""
        _, args = parse_args(["tick"])

        assert await main_async(args, config) == 0
        assert json.loads(capsys.readouterr().out) == {"jobs": []}
