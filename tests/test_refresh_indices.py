"""
Tests for refresh_indices.py: RefreshWorkflow and the CLI entry point

Verifies initialisation, logging, dry-run planning, exit codes, the run
ledger, webhook notification and the monthly scheduler arithmetic without
network calls.
"""
import json
import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pipeline.coordinator import IngestionResult
from refresh_indices import (
    EXIT_CONFIG,
    EXIT_FAILURES,
    EXIT_OK,
    RefreshWorkflow,
    _next_run_time,
    build_parser,
    main,
)


@pytest.fixture()
def small_config(ingest_config):
    ingest_config.periods = {
        "icf": "01/2025:03/2025",
        "icec": "01/2025:02/2025",
        "peic": "01/2025:01/2025",
    }
    return ingest_config


def _workflow(config, tmp_path, **kwargs):
    return RefreshWorkflow(config=config, logs_dir=tmp_path / "logs", **kwargs)


def _result(family="ICF", failures=0):
    return IngestionResult(
        family=family, period_start="01/2025", period_end="03/2025",
        duration_seconds=1.25, mode="incremental",
        counts_by_method={"primary": 3 - failures},
        success_count=3 - failures, failure_count=failures,
    )


def _ledger_lines(tmp_path):
    path = tmp_path / "logs" / "ledger.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


# ── RefreshWorkflow initialisation ────────────────────────────────────────────

class TestRefreshWorkflowInit:
    def test_defaults(self, ingest_config):
        wf = RefreshWorkflow(config=ingest_config)
        assert wf.families == ["icf", "icec", "peic"]
        assert wf.mode is None
        assert wf.verbose is False
        assert wf.dry_run is False
        assert wf.notify_url is None
        assert wf.db_path == ingest_config.db_path
        assert wf.results == {}

    def test_custom_params(self, ingest_config):
        wf = RefreshWorkflow(
            families=["PEIC"], mode="truncate", verbose=True, dry_run=True,
            notify_url="https://hooks.example.com/notify",
            db_path="/tmp/test.sqlite", config=ingest_config,
        )
        assert wf.families == ["peic"]
        assert wf.mode == "truncate"
        assert wf.notify_url == "https://hooks.example.com/notify"
        assert wf.db_path == Path("/tmp/test.sqlite")

    def test_notify_url_from_config(self, ingest_config):
        ingest_config.notify_url = "http://hooks.example.com/x"
        assert RefreshWorkflow(config=ingest_config).notify_url == "http://hooks.example.com/x"

    def test_notify_scheme_rejected(self, ingest_config):
        with pytest.raises(ValueError, match="scheme"):
            RefreshWorkflow(config=ingest_config, notify_url="file:///etc/passwd")


# ── Logging ───────────────────────────────────────────────────────────────────

class TestLogging:
    @pytest.mark.parametrize("level,marker", [
        ("info", "] hello"), ("warn", "WARNING: hello"),
        ("error", "ERROR: hello"), ("ok", "OK: hello"),
    ])
    def test_levels(self, ingest_config, capsys, level, marker):
        RefreshWorkflow(config=ingest_config).log("hello", level)
        assert marker in capsys.readouterr().out

    def test_detail_verbose(self, ingest_config, capsys):
        RefreshWorkflow(config=ingest_config, verbose=True).log("details", "detail")
        assert "-> details" in capsys.readouterr().out

    def test_detail_not_verbose(self, ingest_config, capsys):
        RefreshWorkflow(config=ingest_config).log("details", "detail")
        assert capsys.readouterr().out == ""


# ── run() ─────────────────────────────────────────────────────────────────────

class TestRun:
    def test_dry_run_prints_plan(self, small_config, tmp_path, capsys):
        wf = _workflow(small_config, tmp_path, dry_run=True, verbose=True)
        assert wf.run() == EXIT_OK
        out = capsys.readouterr().out
        assert "ICF [incremental] 01/2025 .. 03/2025: 3 pair(s) to fetch for BR" in out
        assert "PEIC [incremental] 01/2025 .. 01/2025: 1 pair(s)" in out
        assert "BR 02/2025" in out

    def test_dry_run_writes_ledger(self, small_config, tmp_path):
        _workflow(small_config, tmp_path, dry_run=True).run()
        (record,) = _ledger_lines(tmp_path)
        assert record["exit_code"] == EXIT_OK
        assert record["args"]["dry_run"] is True
        assert record["steps"]["icf_primary"]["status"] == "skipped"

    def test_bad_period_is_config_error(self, small_config, tmp_path, capsys):
        small_config.periods["icec"] = "13/2025:>"
        assert _workflow(small_config, tmp_path).run() == EXIT_CONFIG
        assert "Configuration error" in capsys.readouterr().out
        assert not (tmp_path / "logs" / "ledger.jsonl").exists()

    def test_bad_region_is_config_error(self, small_config, tmp_path):
        small_config.regions = {"icf": ["XX"]}
        assert _workflow(small_config, tmp_path, families=["icf"]).run() == EXIT_CONFIG

    def test_bad_processing_method(self, small_config, tmp_path):
        small_config.processing_method = "sometimes"
        assert _workflow(small_config, tmp_path).run() == EXIT_CONFIG

    @patch("refresh_indices.IngestionCoordinator")
    def test_failures_exit_one(self, mock_coord, small_config, tmp_path, capsys):
        mock_coord.return_value.run.side_effect = [_result("ICF", failures=1), _result("PEIC")]
        wf = _workflow(small_config, tmp_path, families=["icf", "peic"])
        assert wf.run() == EXIT_FAILURES
        out = capsys.readouterr().out
        assert "[FAIL] icf" in out
        assert "[OK] peic" in out
        (record,) = _ledger_lines(tmp_path)
        assert record["exit_code"] == EXIT_FAILURES

    @patch("refresh_indices.IngestionCoordinator")
    def test_all_ok(self, mock_coord, small_config, tmp_path):
        mock_coord.return_value.run.return_value = _result()
        wf = _workflow(small_config, tmp_path, families=["icf"])
        assert wf.run() == EXIT_OK
        assert wf.results["icf"].success_count == 3
        (run_dir,) = [p for p in (tmp_path / "logs").iterdir() if p.is_dir()]
        summary = json.loads((run_dir / "summary.json").read_text(encoding="utf-8"))
        assert summary["results"]["icf"]["success_count"] == 3

    @patch("refresh_indices.IngestionCoordinator")
    def test_concurrent_run_skipped(self, mock_coord, small_config, tmp_path, capsys):
        mock_coord.return_value.run.return_value = None
        wf = _workflow(small_config, tmp_path, families=["icf"])
        assert wf.run() == EXIT_OK
        assert "already running" in capsys.readouterr().out

    @patch("refresh_indices.IngestionCoordinator")
    def test_mode_passed_through(self, mock_coord, small_config, tmp_path):
        mock_coord.return_value.run.return_value = _result()
        _workflow(small_config, tmp_path, families=["icf"], mode="truncate").run()
        family_config = mock_coord.return_value.run.call_args[0][0]
        assert family_config.mode == "truncate"
        assert family_config.period_spec == "01/2025:03/2025"

    @patch("refresh_indices.IngestionCoordinator")
    def test_notification_per_family(self, mock_coord, small_config, tmp_path):
        mock_coord.return_value.run.return_value = _result()
        wf = _workflow(small_config, tmp_path, families=["icf"],
                       notify_url="https://hooks.example.com/n")
        with patch.object(wf, "_send_notification") as send:
            wf.run()
        send.assert_called_once()


# ── Notification ──────────────────────────────────────────────────────────────

class TestNotification:
    @patch("refresh_indices.urllib.request.urlopen")
    def test_posts_json(self, mock_urlopen, ingest_config, capsys):
        mock_urlopen.return_value.__enter__ = MagicMock(return_value=MagicMock())
        mock_urlopen.return_value.__exit__ = MagicMock(return_value=False)
        wf = RefreshWorkflow(config=ingest_config, notify_url="https://hooks.example.com/n")
        wf._send_notification(_result())
        req = mock_urlopen.call_args[0][0]
        assert req.get_method() == "POST"
        assert json.loads(req.data)["family"] == "ICF"
        assert "Notification sent" in capsys.readouterr().out

    @patch("refresh_indices.urllib.request.urlopen", side_effect=OSError("refused"))
    def test_failure_is_non_fatal(self, mock_urlopen, ingest_config, capsys):
        wf = RefreshWorkflow(config=ingest_config, notify_url="https://hooks.example.com/n")
        wf._send_notification(_result())
        assert "Notification failed" in capsys.readouterr().out


# ── Scheduler ─────────────────────────────────────────────────────────────────

class TestNextRunTime:
    def test_later_today_on_the_first(self):
        now = datetime(2025, 7, 1, 5, 0)
        assert _next_run_time("06:00", now=now) == datetime(2025, 7, 1, 6, 0).timestamp()

    def test_mid_month_rolls_forward(self):
        now = datetime(2025, 7, 15, 12, 0)
        assert _next_run_time("06:00", now=now) == datetime(2025, 8, 1, 6, 0).timestamp()

    def test_december_rolls_into_january(self):
        now = datetime(2025, 12, 2)
        assert _next_run_time(None, now=now) == datetime(2026, 1, 1, 0, 0).timestamp()

    def test_invalid_hour_defaults_to_midnight(self, capsys):
        now = datetime(2025, 7, 15)
        assert _next_run_time("six", now=now) == datetime(2025, 8, 1).timestamp()
        assert "Invalid --at-hour" in capsys.readouterr().out

    @pytest.mark.parametrize("at_hour", ["25:00", "06:75", "-1:00"])
    def test_out_of_range_hour_defaults_to_midnight(self, at_hour, capsys):
        now = datetime(2025, 7, 15)
        assert _next_run_time(at_hour, now=now) == datetime(2025, 8, 1).timestamp()
        assert f"Invalid --at-hour value '{at_hour}'" in capsys.readouterr().out


# ── CLI ───────────────────────────────────────────────────────────────────────

class TestCli:
    def test_parser_defaults(self):
        args = build_parser().parse_args([])
        assert args.families is None
        assert args.mode is None
        assert args.dry_run is False
        assert args.schedule is None

    def test_parser_families(self):
        args = build_parser().parse_args(["--families", "icf", "peic", "--mode", "truncate"])
        assert args.families == ["icf", "peic"]
        assert args.mode == "truncate"

    def test_unknown_family_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--families", "ipca"])

    def test_bad_notify_returns_config_exit(self, capsys):
        assert main(["--notify", "ftp://example.com/hook"]) == EXIT_CONFIG
        assert "ERROR:" in capsys.readouterr().out

    @patch("refresh_indices.RefreshWorkflow")
    def test_main_runs_workflow(self, mock_wf):
        mock_wf.return_value.run.return_value = EXIT_FAILURES
        assert main(["--families", "icec", "--dry-run", "--db", "x.sqlite"]) == EXIT_FAILURES
        kwargs = mock_wf.call_args.kwargs
        assert kwargs["families"] == ["icec"]
        assert kwargs["dry_run"] is True
        assert kwargs["db_path"] == Path("x.sqlite")

    @patch("refresh_indices.run_scheduled")
    @patch("refresh_indices.RefreshWorkflow")
    def test_schedule_validates_then_loops(self, mock_wf, mock_sched):
        assert main(["--schedule", "monthly", "--at-hour", "06:00"]) == EXIT_OK
        mock_wf.assert_called_once()
        mock_sched.assert_called_once()


class TestHistory:
    def test_empty_ledger(self, tmp_path, capsys):
        assert main(["--history", "3", "--logs-dir", str(tmp_path / "logs")]) == EXIT_OK
        assert "No runs recorded" in capsys.readouterr().out

    @patch("refresh_indices.IngestionCoordinator")
    def test_lists_recent_runs(self, mock_coord, small_config, tmp_path, capsys):
        mock_coord.return_value.run.return_value = _result("ICF", failures=1)
        _workflow(small_config, tmp_path, families=["icf"]).run()
        capsys.readouterr()
        assert main(["--history", "5", "--logs-dir", str(tmp_path / "logs")]) == EXIT_OK
        out = capsys.readouterr().out
        assert "exit=1" in out
        assert "icf=2/3" in out
