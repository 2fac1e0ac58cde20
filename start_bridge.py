"""Startup script for the ClawdBot Feishu bridge.

Usage:
  start_bridge.py start   [fs_app_id=xxx fs_app_secret=yyy agent_id=main thinking_ms=0]
  start_bridge.py stop
  start_bridge.py status
  start_bridge.py restart [fs_app_id=xxx fs_app_secret=yyy]
  start_bridge.py run     [fs_app_id=xxx fs_app_secret=yyy]
"""
from __future__ import annotations

import argparse
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional

import uvicorn
from fastapi import FastAPI

from bridge.dedup import DedupCache
from bridge.dispatcher import Bridge
from bridge.webhook import create_app
from channels.feishu_channel import FeishuChannel
from config import BridgeConfig, ConfigError, config_dir, load_config, save_bridge_args
from gateway.client import GatewayClient
from utils.logger import setup_logger

PID_FILE = "bridge.pid"
DAEMON_OUTPUT_FILE = "bridge.out"


def build_app(cfg: BridgeConfig) -> FastAPI:
    """Wire the process-wide objects once and hand them to the webhook app."""
    gateway_client = GatewayClient.from_config(cfg.gateway)
    channel = FeishuChannel(cfg.feishu.app_id, cfg.feishu.app_secret, api_base=cfg.feishu.api_base)
    dedup_cache = DedupCache(ttl=cfg.bridge.dedup_ttl_s, sweep_interval=cfg.bridge.dedup_sweep_interval_s)
    bridge = Bridge.from_config(cfg, channel, gateway_client, dedup_cache)
    return create_app(
        bridge,
        channel,
        verification_token=cfg.feishu.verification_token,
        dedup_cache=dedup_cache,
        events_path=cfg.server.events_path,
        shutdown_grace=cfg.bridge.shutdown_grace_s,
    )


def read_pid(pid_path: Path) -> Optional[int]:
    try:
        return int(pid_path.read_text().strip())
    except (OSError, ValueError):
        return None


def is_process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def is_running(pid_path: Path) -> bool:
    pid = read_pid(pid_path)
    return pid is not None and is_process_running(pid)


def wait_for_exit(pid: int, attempts: int = 10, interval: float = 0.2) -> bool:
    for _ in range(attempts):
        time.sleep(interval)
        if not is_process_running(pid):
            return True
    return False


def stop_process(pid_path: Path) -> bool:
    pid = read_pid(pid_path)
    if pid is None:
        return False
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pid_path.unlink(missing_ok=True)
        return False
    wait_for_exit(pid)
    pid_path.unlink(missing_ok=True)
    return True


def cmd_start() -> int:
    directory = config_dir()
    pid_path = directory / PID_FILE

    if is_running(pid_path):
        print("Already running")
        return 1

    # Validate config before daemonizing so errors are visible
    try:
        load_config(directory)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    out_path = directory / DAEMON_OUTPUT_FILE
    with open(out_path, "a", encoding="utf-8") as out, open(os.devnull, "rb") as dev_null:
        proc = subprocess.Popen(
            [sys.executable, os.path.abspath(__file__), "run"],
            stdin=dev_null,
            stdout=out,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )

    try:
        pid_path.write_text(str(proc.pid))
    except OSError as e:
        proc.kill()
        print(f"Failed to write PID file: {e}", file=sys.stderr)
        return 1

    print(f"Started (PID {proc.pid}), log: {directory / 'bridge.log'}")
    return 0


def cmd_stop() -> int:
    if not stop_process(config_dir() / PID_FILE):
        print("Not running")
        return 1
    print("Stopped")
    return 0


def cmd_status() -> int:
    pid_path = config_dir() / PID_FILE
    if is_running(pid_path):
        print(f"Running (PID {read_pid(pid_path)})")
        return 0
    print("Not running")
    return 1


def cmd_restart() -> int:
    stop_process(config_dir() / PID_FILE)
    return cmd_start()


def cmd_run() -> int:
    try:
        cfg = load_config()
    except ConfigError as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return 1

    logger = setup_logger(cfg.system.log_dir, cfg.system.log_level)
    logger.info("=" * 60)
    logger.info("ClawdBot Bridge")
    logger.info("=" * 60)
    logger.info(
        f"Loaded config: AppID={cfg.feishu.app_id}, "
        f"Gateway={cfg.gateway.host}:{cfg.gateway.port}, AgentID={cfg.gateway.agent_id}"
    )
    logger.info(f"Feishu events : http://{cfg.server.host}:{cfg.server.port}{cfg.server.events_path}")

    uvicorn.run(
        build_app(cfg),
        host=cfg.server.host,
        port=cfg.server.port,
        log_level="info",
    )
    return 0


COMMANDS = {
    "start": cmd_start,
    "stop": cmd_stop,
    "status": cmd_status,
    "restart": cmd_restart,
    "run": cmd_run,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="ClawdBot Feishu bridge")
    parser.add_argument("command", nargs="?", default="run", choices=sorted(COMMANDS))
    parser.add_argument("settings", nargs="*", help="key=value pairs saved to bridge.json")
    args = parser.parse_args(argv)

    if args.command in ("start", "restart", "run") and args.settings:
        saved = save_bridge_args(args.settings)
        if saved:
            print(f"Saved config to {saved}")

    return COMMANDS[args.command]()


if __name__ == "__main__":
    sys.exit(main())
