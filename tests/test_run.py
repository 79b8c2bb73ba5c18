"""Tests for the run.py entrypoint helpers."""

from __future__ import annotations

from types import SimpleNamespace

from typer.testing import CliRunner

import run
from lms.bootstrap import BootstrapError


def test_serve_builds_uvicorn_server(monkeypatch, tmp_path):
    captured = {}
    config = SimpleNamespace(storage_root=tmp_path)

    monkeypatch.setattr(run, "initialize_app", lambda config_path=None: config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: captured.setdefault("log_root", storage_root))

    dummy_app = SimpleNamespace(state=SimpleNamespace())
    monkeypatch.setattr(run, "create_app", lambda app_config: dummy_app)

    class DummyConfig:
        def __init__(self, app, **kwargs):
            captured["app"] = app
            captured["config_kwargs"] = kwargs

    class DummyServer:
        def __init__(self, server_config):
            captured["server_config"] = server_config

        def run(self):
            captured["server_run"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)

    run.serve(host="0.0.0.0", port=9000, config_path=None)

    assert captured["app"] is dummy_app
    assert captured["config_kwargs"] == {"host": "0.0.0.0", "port": 9000, "log_config": None}
    assert captured["server_run"] is True
    assert captured["log_root"] == tmp_path
    assert isinstance(dummy_app.state.server, DummyServer)


def test_sweep_command_reports_expired_attempts(monkeypatch, temp_config):
    monkeypatch.setattr(run, "initialize_app", lambda config_path=None: temp_config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)

    result = CliRunner().invoke(run.cli, ["sweep-attempts"])

    assert result.exit_code == 0
    assert "No expired attempts found." in result.output


def test_init_command_prints_paths(monkeypatch, temp_config):
    monkeypatch.setattr(run, "initialize_app", lambda config_path=None: temp_config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)

    result = CliRunner().invoke(run.cli, ["init"])

    assert result.exit_code == 0
    assert str(temp_config.database_file) in result.output


def test_bootstrap_failure_exits_with_error(monkeypatch):
    def failing(config_path=None):
        raise BootstrapError("Storage directory is not writable")

    monkeypatch.setattr(run, "initialize_app", failing)

    result = CliRunner().invoke(run.cli, ["init"])

    assert result.exit_code == 1
    assert "Initialization failed" in result.output
