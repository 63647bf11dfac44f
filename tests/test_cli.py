"""Tests for the deployctl command line."""

import json

import pytest

from deployctl import cli

SERVICES_YAML = """
environment: test
services:
  api:
    version: "2.0.0"
    dependencies: [db]
    config:
      commands:
        deploy: "true"
        stop: "true"
  db:
    version: "15.2"
    config:
      commands:
        deploy: ["true"]
"""


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    services_file = tmp_path / "services.yaml"
    services_file.write_text(SERVICES_YAML)
    monkeypatch.setenv("SERVICES_FILE", str(services_file))
    monkeypatch.setenv("STATE_BACKEND", "file")
    monkeypatch.setenv("STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("LOCK_FILE", str(tmp_path / "deployctl.lock"))
    monkeypatch.setenv("HEALTH_CHECK_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("METRICS_TEXTFILE", str(tmp_path / "deployctl.prom"))
    return tmp_path


def _run(argv, capsys):
    args = cli.build_parser().parse_args(argv)
    code = args.func(args)
    return code, json.loads(capsys.readouterr().out)


class TestCli:
    def test_parser_requires_a_command(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_plan(self, workspace, capsys):
        code, output = _run(["plan"], capsys)

        assert code == 0
        assert output["environment"] == "test"
        assert [entry["service"] for entry in output["order"]] == ["db", "api"]
        assert output["order"][1]["dependencies"] == ["db"]

    def test_env_flag_overrides_settings(self, workspace, capsys, tmp_path):
        other = tmp_path / "other.yaml"
        other.write_text("services:\n  solo: {}\n")

        code, output = _run(["--services-file", str(other), "--env", "qa", "plan"], capsys)

        assert code == 0
        assert output["environment"] == "qa"
        assert [entry["service"] for entry in output["order"]] == ["solo"]

    def test_deploy_then_inspect(self, workspace, capsys):
        code, run = _run(["deploy"], capsys)

        assert code == 0
        assert run["ok"] is True
        assert run["deployed"] == ["db", "api"]
        assert (workspace / "deployctl.prom").exists()

        code, status = _run(["status", "api"], capsys)
        assert code == 0
        assert status["status"] == "deployed"
        assert status["health"] == "healthy"
        assert status["version"] == "2.0.0"

        code, history = _run(["history", "api", "--limit", "5"], capsys)
        assert code == 0
        assert [entry["health"] for entry in history] == ["healthy", "pending"]

        code, validation = _run(["validate", "api"], capsys)
        assert code == 0
        assert validation == {"service": "api", "valid": True}

        code, cleanup = _run(["cleanup", "--days", "30"], capsys)
        assert code == 0
        assert cleanup == {"days_to_keep": 30, "deleted": 0}

    def test_failed_deploy_exits_non_zero(self, workspace, capsys):
        (workspace / "services.yaml").write_text(
            "services:\n  db:\n    config:\n      commands:\n        deploy: 'false'\n"
        )

        code, run = _run(["deploy"], capsys)

        assert code == 1
        assert run["ok"] is False
        assert run["failed_service"] == "db"
        assert run["rolled_back"] is True

    def test_validate_unknown_service(self, workspace, capsys):
        code, output = _run(["validate", "ghost"], capsys)

        assert code == 1
        assert output["valid"] is False

    def test_init_db_requires_sql_backend(self, workspace):
        args = cli.build_parser().parse_args(["init-db"])

        with pytest.raises(RuntimeError, match="STATE_BACKEND=sql"):
            args.func(args)
