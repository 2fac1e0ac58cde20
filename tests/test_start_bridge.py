"""
启动脚本测试 (不真正启动守护进程)
"""
import json
import os
import signal

import pytest
from fastapi import FastAPI

import start_bridge
from config import BridgeConfig


@pytest.fixture
def home_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(start_bridge, "config_dir", lambda: tmp_path)
    monkeypatch.setattr("config.config_dir", lambda home=None: tmp_path)
    return tmp_path


class TestPidFile:

    def test_read_pid(self, tmp_path):
        pid_path = tmp_path / "bridge.pid"
        assert start_bridge.read_pid(pid_path) is None
        pid_path.write_text("1234\n")
        assert start_bridge.read_pid(pid_path) == 1234
        pid_path.write_text("garbage")
        assert start_bridge.read_pid(pid_path) is None

    def test_is_process_running(self):
        assert start_bridge.is_process_running(os.getpid())

    def test_stop_without_pid_file(self, tmp_path):
        assert start_bridge.stop_process(tmp_path / "bridge.pid") is False

    def test_stop_stale_pid(self, tmp_path, monkeypatch):
        pid_path = tmp_path / "bridge.pid"
        pid_path.write_text("424242")

        def gone(pid, sig):
            raise ProcessLookupError

        monkeypatch.setattr(start_bridge.os, "kill", gone)
        assert start_bridge.stop_process(pid_path) is False
        assert not pid_path.exists()

    def test_stop_sends_sigterm(self, tmp_path, monkeypatch):
        pid_path = tmp_path / "bridge.pid"
        pid_path.write_text("4242")
        sent = []

        def fake_kill(pid, sig):
            sent.append((pid, sig))
            if sig == 0:
                raise ProcessLookupError

        monkeypatch.setattr(start_bridge.os, "kill", fake_kill)
        monkeypatch.setattr(start_bridge.time, "sleep", lambda s: None)

        assert start_bridge.stop_process(pid_path) is True
        assert sent[0] == (4242, signal.SIGTERM)
        assert not pid_path.exists()


class TestCommands:

    def test_status_not_running(self, home_dir, capsys):
        assert start_bridge.main(["status"]) == 1
        assert "Not running" in capsys.readouterr().out

    def test_status_running(self, home_dir, capsys):
        (home_dir / "bridge.pid").write_text(str(os.getpid()))
        assert start_bridge.main(["status"]) == 0
        assert f"PID {os.getpid()}" in capsys.readouterr().out

    def test_stop_not_running(self, home_dir):
        assert start_bridge.main(["stop"]) == 1

    def test_start_refuses_when_running(self, home_dir, capsys):
        (home_dir / "bridge.pid").write_text(str(os.getpid()))
        assert start_bridge.main(["start"]) == 1
        assert "Already running" in capsys.readouterr().out

    def test_start_requires_config(self, home_dir, capsys):
        assert start_bridge.main(["start"]) == 1
        assert "Config error" in capsys.readouterr().err

    def test_run_saves_arguments_before_loading(self, home_dir, monkeypatch):
        monkeypatch.setitem(start_bridge.COMMANDS, "run", lambda: 0)

        assert start_bridge.main(["run", "fs_app_id=cli_x", "fs_app_secret=s"]) == 0
        data = json.loads((home_dir / "bridge.json").read_text(encoding="utf-8"))
        assert data["feishu"] == {"app_id": "cli_x", "app_secret": "s"}

    def test_unknown_command(self, home_dir):
        with pytest.raises(SystemExit):
            start_bridge.main(["explode"])


class TestBuildApp:

    def test_build_app(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        cfg = BridgeConfig(feishu={"app_id": "cli_a", "app_secret": "s"})
        app = start_bridge.build_app(cfg)

        assert isinstance(app, FastAPI)
        paths = {route.path for route in app.routes}
        assert "/feishu/events" in paths
        assert "/healthz" in paths
