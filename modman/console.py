from __future__ import annotations

import time

from mcrcon import MCRcon, MCRconException

from .config import ModmanConfig


class ConsoleError(RuntimeError):
    pass


def send_command(cfg: ModmanConfig, command: str) -> str:
    if not cfg.rcon.enabled:
        raise ConsoleError("RCON is disabled in this configuration")

    try:
        with MCRcon(cfg.rcon.host, cfg.rcon.password, port=cfg.rcon.port) as mcr:
            response = mcr.command(command)
    except (ConnectionError, MCRconException) as exc:  # pragma: no cover - depends on runtime environment
        raise ConsoleError(f"Unable to reach RCON at {cfg.rcon.host}:{cfg.rcon.port}") from exc
    return response.strip()


def wait_until_ready(cfg: ModmanConfig, timeout: float = 180.0, interval: float = 5.0) -> bool:
    """Poll RCON until the test server answers or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            send_command(cfg, "list")
            return True
        except ConsoleError:
            time.sleep(interval)
    return False
