"""Systemd provider for controlling the edge server service unit."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import ProcessError


class SystemdError(ProcessError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Thin wrapper around ``systemctl`` for a single service unit."""

    unit: str = "nginx"
    systemctl_bin: str = "systemctl"

    def start(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        return self._systemctl("start", dry_run=dry_run)

    def stop(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop", dry_run=dry_run)

    def restart(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Restart the unit."""
        return self._systemctl("restart", dry_run=dry_run)

    def reload(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Reload the unit's configuration."""
        return self._systemctl("reload", dry_run=dry_run)

    def is_active(self) -> bool:
        """Return ``True`` when ``systemctl is-active`` reports the unit running."""
        try:
            result = self._systemctl("is-active", "--quiet", check=False)
        except SystemdError:
            return False
        return result.returncode == 0

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        *extra: str,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command, *extra, self.unit]
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command} {self.unit}",
            dry_run=dry_run,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        dry_run: bool,
    ) -> subprocess.CompletedProcess[str]:
        if dry_run:
            return subprocess.CompletedProcess(
                list(args),
                returncode=0,
                stdout="",
                stderr="",
            )
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdProvider", "SystemdError"]
