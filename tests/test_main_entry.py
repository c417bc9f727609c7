"""
Tests for the command line entry point.
"""

import json
import logging
from unittest.mock import patch

import pytest

from recovery_lattice import __version__, main
from recovery_lattice.config.settings import Settings
from recovery_lattice.core.builtin import default_plugins


@pytest.fixture
def cli_settings(tmp_path):
    settings = Settings(
        store={"artifacts_root": tmp_path / "artifacts"},
        observability={"enable_tracing": False, "enable_metrics": False},
    )
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    with patch("recovery_lattice.main.get_settings", return_value=settings):
        yield settings
    root.handlers[:] = handlers
    root.setLevel(level)


class TestArgumentParsing:
    """Test the parser."""

    def test_run_defaults(self):
        args = main.build_parser().parse_args(["run"])

        assert args.command == "run"
        assert args.template is None
        assert args.mode == "live"
        assert args.parallel is False

    def test_unknown_template_is_rejected(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args(["run", "--template", "nope"])


class TestMainModule:
    """Test main() end to end."""

    def test_version(self, capsys):
        assert main.main(["--version"]) == 0
        assert capsys.readouterr().out.strip() == f"recovery-lattice v{__version__}"

    def test_no_command_prints_help(self, capsys):
        assert main.main([]) == 0
        assert "usage:" in capsys.readouterr().out

    def test_run_succeeds(self, cli_settings, capsys):
        code = main.main(["run", "--payload", '{"incident": 3}'])

        out = capsys.readouterr().out
        output = json.loads(out[out.index("{\n") :])
        assert code == 0
        assert output["status"] == "succeeded"
        assert len(output["timeline"]) == 4
        assert output["timeline"][-1]["output"] == {"incident": 3}

    def test_run_prints_camel_case_output(self, cli_settings, capsys):
        main.main(["run", "--template", "horizon", "--phases", "ingest,analyze"])

        out = capsys.readouterr().out
        output = json.loads(out[out.index("{\n") :])
        assert output["status"] == "succeeded"
        assert [e["stage"] for e in output["timeline"]] == ["ingest", "analyze"]
        assert "runId" in output
        assert output["report"]["stageCount"] == 2

    def test_failing_stage_exit_code(self, cli_settings, capsys):
        code = main.main(["run", "--fail-stage", "simulate"])

        out = capsys.readouterr().out
        output = json.loads(out[out.index("{\n") :])
        assert code == 1
        assert output["status"] == "failed"
        assert output["error"].startswith("PLUGIN_ERROR")

    def test_dry_run(self, cli_settings, capsys):
        code = main.main(["run", "--mode", "dry-run", "--template", "recovery"])

        out = capsys.readouterr().out
        output = json.loads(out[out.index("{\n") :])
        assert code == 0
        assert output["status"] == "queued"
        assert output["report"]["pluginCount"] == 8

    def test_unknown_phase_exit_code(self, cli_settings, capsys):
        code = main.main(["run", "--phases", "approve"])

        assert code == 2
        assert "UNKNOWN_STAGE" in capsys.readouterr().err

    def test_plugin_timeout_comes_from_settings(self, cli_settings, capsys):
        cli_settings.engine.default_plugin_timeout_ms = 250
        with patch("recovery_lattice.main.default_plugins", wraps=default_plugins) as factory:
            code = main.main(["run", "--phases", "ingest"])

        capsys.readouterr()
        assert code == 0
        assert factory.call_args.kwargs["timeout_ms"] == 250
