"""
Start the daemon at login.

- macOS: LaunchAgent plist
- Linux: systemd user unit, or an XDG autostart entry when systemd is absent
"""

from __future__ import annotations

import os
import plistlib
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from loguru import logger

from autosort.exceptions import AutostartUnsupported

LABEL = "io.autosort.autosortd"
UNIT_NAME = "autosortd.service"
DESKTOP_NAME = "autosortd.desktop"

_UNIT = """[Unit]
Description=autosort file organizer daemon
After=default.target

[Service]
Type=simple
ExecStart={command}
Restart=on-failure
RestartSec=5

[Install]
WantedBy=default.target
"""

_DESKTOP = """[Desktop Entry]
Type=Application
Name=autosort daemon
Exec={command}
Hidden=false
NoDisplay=true
X-GNOME-Autostart-enabled=true
"""


class Autostart:
    """Writes or removes the platform's login-item file."""

    def __init__(
        self,
        platform: str = sys.platform,
        home: Optional[Path] = None,
        systemd: Optional[bool] = None,
        command: Optional[List[str]] = None,
    ):
        """
        Args:
            platform: ``sys.platform`` value to target
            home: Home directory (default: the user's)
            systemd: Force systemd detection on Linux
            command: Daemon command line (default: ``autosortd run``)
        """
        self.platform = platform
        self.home = home or Path.home()
        self._systemd = systemd
        self._command = command

    @property
    def uses_systemd(self) -> bool:
        if self._systemd is None:
            self._systemd = _systemd_available()
        return self._systemd

    @property
    def path(self) -> Path:
        """Location of the login-item file for this platform."""
        if self.platform == "darwin":
            return self.home / "Library" / "LaunchAgents" / f"{LABEL}.plist"
        if self.platform.startswith("linux"):
            if self.uses_systemd:
                return self.home / ".config" / "systemd" / "user" / UNIT_NAME
            config_home = os.environ.get("XDG_CONFIG_HOME") or str(self.home / ".config")
            return Path(config_home) / "autostart" / DESKTOP_NAME
        raise AutostartUnsupported(f"Auto-start is not supported on {self.platform}")

    def command(self) -> List[str]:
        if self._command:
            return list(self._command)
        binary = shutil.which("autosortd")
        if binary:
            return [binary, "run"]
        return [sys.executable, "-m", "scripts.autosortd", "run"]

    def content(self) -> str:
        argv = self.command()
        if self.platform == "darwin":
            return plistlib.dumps(_launch_agent(argv)).decode("utf-8")
        command = " ".join(shlex.quote(arg) for arg in argv)
        if self.uses_systemd:
            return _UNIT.format(command=command)
        return _DESKTOP.format(command=command)

    def is_enabled(self) -> bool:
        try:
            return self.path.exists()
        except AutostartUnsupported:
            return False

    def enable(self) -> Path:
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.content(), encoding="utf-8")
        logger.success(f"Auto-start enabled: {path}")
        self._daemon_reload()
        return path

    def disable(self) -> None:
        path = self.path
        path.unlink(missing_ok=True)
        logger.info(f"Auto-start disabled: {path}")
        self._daemon_reload()

    def toggle(self) -> bool:
        """Flip auto-start. Returns the new state."""
        if self.is_enabled():
            self.disable()
            return False
        self.enable()
        return True

    def _daemon_reload(self) -> None:
        if not (self.platform.startswith("linux") and self.uses_systemd):
            return
        try:
            subprocess.run(
                ["systemctl", "--user", "daemon-reload"],
                capture_output=True,
                timeout=10,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"systemctl daemon-reload failed: {e}")


def _systemd_available() -> bool:
    if shutil.which("systemctl") is None:
        return False
    try:
        result = subprocess.run(
            ["systemctl", "--user", "--version"],
            capture_output=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0


def is_enabled() -> bool:
    return Autostart().is_enabled()


def enable() -> Path:
    return Autostart().enable()


def disable() -> None:
    Autostart().disable()


def toggle() -> bool:
    return Autostart().toggle()


def _launch_agent(argv: List[str]) -> dict:
    return {
        "Label": LABEL,
        "ProgramArguments": argv,
        "RunAtLoad": True,
        "KeepAlive": False,
        "StandardOutPath": "/tmp/autosortd.stdout.log",
        "StandardErrorPath": "/tmp/autosortd.stderr.log",
    }
