from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from . import console as console_module
from .config import ModmanConfig

logger = logging.getLogger(__name__)

PID_FILENAME = "server.pid"
LOG_FILENAME = "server.log"


@dataclass(slots=True)
class ServerStatus:
    running: bool
    game_version: str
    pid: Optional[int] = None


class ServerError(RuntimeError):
    pass


def server_root(cfg: ModmanConfig, game_version: str) -> Path:
    return cfg.server_dir / game_version


def find_server_jar(cfg: ModmanConfig, game_version: str) -> Path:
    folder = cfg.download_dir / game_version
    jars = sorted(folder.glob("*.jar")) if folder.exists() else []
    if not jars:
        raise ServerError(f"No server jar downloaded for {game_version}; run 'modman download' first.")
    preferred = [jar for jar in jars if "server" in jar.name.lower()]
    return (preferred or jars)[0]


def prepare_server(cfg: ModmanConfig, game_version: str) -> Path:
    """Lay out ``server/{game_version}`` with the jar, eula, RCON settings and the mods folder."""

    root = server_root(cfg, game_version)
    root.mkdir(parents=True, exist_ok=True)
    jar = find_server_jar(cfg, game_version)
    shutil.copy2(jar, root / jar.name)
    (root / "eula.txt").write_text("eula=true\n")

    properties = root / "server.properties"
    if not properties.exists():
        properties.write_text(
            "\n".join(
                [
                    f"enable-rcon={'true' if cfg.rcon.enabled else 'false'}",
                    f"rcon.port={cfg.rcon.port}",
                    f"rcon.password={cfg.rcon.password}",
                    "online-mode=false",
                    "",
                ]
            )
        )

    mods_source = cfg.download_dir / game_version / "mods"
    mods_target = root / "mods"
    if mods_target.exists():
        shutil.rmtree(mods_target)
    if mods_source.exists():
        shutil.copytree(mods_source, mods_target)
    return root


def build_command(cfg: ModmanConfig, jar_name: str) -> List[str]:
    memory = cfg.server_memory
    return [cfg.java_command, f"-Xms{memory}", f"-Xmx{memory}", "-jar", jar_name, "nogui"]


def _read_pid(root: Path) -> Optional[int]:
    pid_file = root / PID_FILENAME
    if not pid_file.exists():
        return None
    try:
        return int(pid_file.read_text().strip())
    except ValueError:
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def get_status(cfg: ModmanConfig, game_version: str) -> ServerStatus:
    pid = _read_pid(server_root(cfg, game_version))
    if pid is None or not _pid_alive(pid):
        return ServerStatus(running=False, game_version=game_version)
    return ServerStatus(running=True, game_version=game_version, pid=pid)


def start_server(cfg: ModmanConfig, game_version: str) -> subprocess.Popen:
    status = get_status(cfg, game_version)
    if status.running:
        raise ServerError(f"Test server for {game_version} is already running (pid {status.pid}).")

    root = prepare_server(cfg, game_version)
    jar = find_server_jar(cfg, game_version)
    cmd = build_command(cfg, jar.name)
    logger.info("Starting test server in %s: %s", root, " ".join(cmd))
    # the child keeps its own copy of the log descriptor
    with (root / LOG_FILENAME).open("a", encoding="utf-8") as log_handle:
        try:
            process = subprocess.Popen(cmd, cwd=root, stdout=log_handle, stderr=subprocess.STDOUT)
        except OSError as exc:
            raise ServerError(f"Failed to start test server: {exc}") from exc
    (root / PID_FILENAME).write_text(str(process.pid))
    return process


def stop_server(cfg: ModmanConfig, game_version: str) -> None:
    status = get_status(cfg, game_version)
    if not status.running:
        raise ServerError(f"Test server for {game_version} is not running.")
    try:
        console_module.send_command(cfg, "stop")
    except console_module.ConsoleError as exc:
        raise ServerError(str(exc)) from exc
    (server_root(cfg, game_version) / PID_FILENAME).unlink(missing_ok=True)
