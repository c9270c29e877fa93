# tests/test_cli.py
"""Tests for the command line interface."""

from legacy_migrate.cli import build_parser, main
from legacy_migrate.services.report_store import ReportStore


class TestParser:

    def test_run_options(self):
        args = build_parser().parse_args([
            "run", "--dry-run", "--batch-size", "50", "--entity", "profiles", "--entity", "orders",
        ])

        assert args.command == "run"
        assert args.dry_run is True
        assert args.batch_size == 50
        assert args.entity == ["profiles", "orders"]


class TestCommands:

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_run_then_report(self, source_url, target_url, source_engine, target_engine, tmp_path, capsys):
        output_dir = str(tmp_path / "cli-output")

        code = main([
            "run", "--source-url", source_url, "--target-url", target_url,
            "--output-dir", output_dir, "--batch-size", "2",
        ])

        assert code == 0
        out = capsys.readouterr().out
        assert "MIGRATION COMPLETE" in out
        assert "Integrity: WARNING" in out

        runs = ReportStore(output_dir).list_runs()
        assert len(runs) == 1
        assert main(["report", "--output-dir", output_dir]) == 0
        assert runs[0]["id"] in capsys.readouterr().out

    def test_report_for_unknown_run(self, tmp_path):
        assert main(["report", "--output-dir", str(tmp_path), "--run-id", "missing"]) == 1

    def test_probe_shows_aliases(self, source_url, source_engine, capsys):
        assert main(["probe", "--source-url", source_url, "--target-url", "sqlite://"]) == 0

        out = capsys.readouterr().out
        assert "name <- title" in out
        assert "category missing, default 'general'" in out

    def test_probe_single_table(self, source_url, source_engine, capsys):
        assert main(["probe", "--source-url", source_url, "--table", "dispatch_office"]) == 0

        out = capsys.readouterr().out
        assert "offices (dispatch_office)" in out
        assert "dispatch_course" not in out

    def test_content_types(self, source_url, source_engine, capsys):
        assert main(["content-types", "--source-url", source_url]) == 0

        out = capsys.readouterr().out
        assert "dispatch.instruction" in out
        assert "order" in out

    def test_contracts_export(self, tmp_path):
        output = tmp_path / "schemas"
        assert main(["contracts", "--output", str(output)]) == 0
        assert (output / "target.orders.orders.json").exists()

    def test_invalid_config_exits_nonzero(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MIGRATION_SOURCE_URL", raising=False)
        monkeypatch.delenv("MIGRATION_TARGET_URL", raising=False)
        assert main(["run", "--output-dir", str(tmp_path)]) == 1
