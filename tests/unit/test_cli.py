"""
Unit tests for the admin CLI and engine settings (no database required).
"""

import os

import pytest

from edc_validation.cli.admin_cli import build_evaluator, build_parser, main, parse_assignment
from edc_validation.config import EngineSettings
from edc_validation.observability.logger import setup_logger


@pytest.fixture(autouse=True)
def restore_logging():
    # main() points the package logger at the captured stderr of the test
    yield
    setup_logger()


@pytest.fixture
def range_rule_file(tmp_path):
    path = tmp_path / "rule.yaml"
    path.write_text(
        """
form_id: 10
name: Age in range
rule_type: range
field_path: age
error_message: Age must be between 18 and 100
min_value: 18
max_value: 100
"""
    )
    return path


class TestParser:
    """Tests for argument parsing"""

    def test_toggle_requires_a_state(self):
        parser = build_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["toggle-rule", "--rule-id", "1"])
        args = parser.parse_args(["toggle-rule", "--rule-id", "1", "--disable"])
        assert args.enable is False

    def test_update_collects_assignments(self):
        args = build_parser().parse_args(
            ["update-rule", "--rule-id", "3", "--set", "min_value=0", "--set", "name=Renamed", "--clear", "pattern"]
        )
        assert args.set == ["min_value=0", "name=Renamed"]
        assert args.clear == ["pattern"]

    def test_database_options_default_to_environment(self):
        args = build_parser().parse_args(["init-schema"])
        assert args.db_host is None and args.db_password is None

    def test_parse_assignment(self):
        assert parse_assignment("min_value=18") == ("min_value", 18)
        assert parse_assignment("active=false") == ("active", False)
        assert parse_assignment("name = Age check") == ("name", "Age check")
        assert parse_assignment("pattern=") == ("pattern", "")
        with pytest.raises(ValueError):
            parse_assignment("min_value")


class TestCommands:
    """Tests for commands that run without a database"""

    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 1
        assert "Admin CLI" in capsys.readouterr().out

    def test_test_rule_from_file(self, capsys, range_rule_file):
        main(["test-rule", "--rule-file", str(range_rule_file), "--value", "30"])
        assert "Result: PASS" in capsys.readouterr().out

        main(["test-rule", "--rule-file", str(range_rule_file), "--value", "12"])
        out = capsys.readouterr().out
        assert "Result: FAIL" in out
        assert "Message: Age must be between 18 and 100" in out

    def test_test_rule_with_form_data(self, capsys, tmp_path):
        path = tmp_path / "rule.yaml"
        path.write_text(
            "form_id: 10\nname: Visit after consent\nrule_type: consistency\nfield_path: visit_date\n"
            "error_message: Visit before consent\noperator: '>='\ncompare_field_path: consent_date\n"
        )
        main([
            "test-rule", "--rule-file", str(path), "--value", "2024-01-01",
            "--data", '{"consent_date": "2024-02-01"}',
        ])
        assert "Result: FAIL" in capsys.readouterr().out

    def test_multi_value_is_skipped(self, capsys, range_rule_file):
        main(["test-rule", "--rule-file", str(range_rule_file), "--value", "30,40"])
        assert "Result: SKIPPED" in capsys.readouterr().out

    def test_invalid_rule_file_exits(self, capsys, tmp_path):
        path = tmp_path / "rule.yaml"
        path.write_text("form_id: 10\nname: No type\n")
        with pytest.raises(SystemExit) as exc_info:
            main(["test-rule", "--rule-file", str(path), "--value", "1"])
        assert exc_info.value.code == 1

    def test_add_rule_without_options_exits_before_connecting(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["add-rule", "--form-id", "10"])
        assert exc_info.value.code == 1
        assert "--name" in capsys.readouterr().out

    def test_update_without_changes_exits(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["update-rule", "--rule-id", "1"])
        assert exc_info.value.code == 1


class TestEngineSettings:
    """Tests for environment-driven settings"""

    def test_defaults(self, monkeypatch):
        for name in (
            "EDC_EXPRESSION_MAX_STEPS", "EDC_EXPRESSION_TIMEOUT_MS", "EDC_REGEX_TIMEOUT_MS", "EDC_LEGACY_RULES_PATH",
        ):
            monkeypatch.delenv(name, raising=False)
        settings = EngineSettings.from_env()
        assert settings.expression_max_steps == 10_000
        assert settings.regex_timeout_ms == 100
        assert settings.legacy_rules_path is None

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("EDC_EXPRESSION_MAX_STEPS", "50")
        monkeypatch.setenv("EDC_REGEX_TIMEOUT_MS", "30")
        monkeypatch.setenv("EDC_LEGACY_RULES_PATH", str(tmp_path / "legacy.yaml"))
        settings = EngineSettings.from_env()
        assert settings.expression_max_steps == 50
        assert settings.legacy_rules_path == tmp_path / "legacy.yaml"

        evaluator = build_evaluator(settings)
        assert evaluator.sandbox.max_steps == 50
        assert evaluator.sandbox.match_timeout_ms == 30

    def test_env_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv("EDC_EXPRESSION_TIMEOUT_MS", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("EDC_EXPRESSION_TIMEOUT_MS=75\n")
        try:
            assert EngineSettings.from_env(env_file).expression_timeout_ms == 75
        finally:
            os.environ.pop("EDC_EXPRESSION_TIMEOUT_MS", None)

    def test_invalid_values_are_rejected(self, monkeypatch):
        monkeypatch.setenv("EDC_EXPRESSION_MAX_STEPS", "0")
        with pytest.raises(ValueError):
            EngineSettings.from_env()
