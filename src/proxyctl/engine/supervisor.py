"""Apply configuration changes to the running edge server with escalation."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

from ..errors import ConfigSyntaxError, ProcessError
from ..providers.nginx import NginxSites
from .context import RunContext
from .interfaces import EdgeServer

OPERATOR_HINTS = (
    "Check the service status with: systemctl status nginx",
    "Inspect the logs with: journalctl -xe",
)


class ApplyError(ProcessError):
    """Raised when the edge server cannot be brought up, even after reverting."""


class ApplyAction(str, Enum):
    """How a change ended up live."""

    RELOADED = "reloaded"
    RESTARTED = "restarted"
    EMERGENCY_REVERTED = "emergency-reverted"


@dataclass(slots=True)
class ApplyResult:
    """What :meth:`ReloadSupervisor.apply` had to do."""

    action: ApplyAction
    problems: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return ``True`` when the new configuration is live."""
        return self.action is not ApplyAction.EMERGENCY_REVERTED


class ReloadSupervisor:
    """Validate, reload, restart and, as a last resort, disable one site."""

    def __init__(self, edge: EdgeServer, sites: NginxSites, *, settle_seconds: float = 1.0) -> None:
        """Drive *edge*; *sites* is used for the emergency revert."""
        self.edge = edge
        self.sites = sites
        self.settle_seconds = settle_seconds

    def apply(self, domain: str, ctx: RunContext) -> ApplyResult:
        """Make the current tree live.

        Raises :class:`ConfigSyntaxError` before touching the process when
        the tree does not validate, and :class:`ApplyError` when nginx stays
        down even after the site for *domain* has been disabled.
        """
        try:
            self.edge.validate_syntax()
        except ConfigSyntaxError:
            ctx.step("validate", status="error")
            raise
        ctx.step("validate")

        problems: list[str] = []
        if self._attempt("reload", problems):
            ctx.step("reload")
            return ApplyResult(ApplyAction.RELOADED, problems)
        ctx.warn("nginx is not active after reload; attempting a full restart.")

        if self._attempt("restart", problems):
            ctx.step("restart")
            return ApplyResult(ApplyAction.RESTARTED, problems)
        ctx.error(
            f"nginx failed to restart; disabling the site for {domain} as an emergency measure."
        )

        removed = self.sites.disable(domain)
        ctx.step("emergency-disable", status="warning", detail={"removed": removed})
        if self._attempt("restart", problems):
            ctx.step("restart", status="warning")
            return ApplyResult(ApplyAction.EMERGENCY_REVERTED, problems)

        ctx.step("restart", status="error")
        details = "; ".join(problems) or "nginx is not active"
        raise ApplyError(
            f"nginx could not be started even after disabling {domain} ({details}). "
            + " ".join(OPERATOR_HINTS)
        )

    def ensure_running(self, ctx: RunContext) -> bool:
        """Start the edge server when it is down; return ``True`` if started."""
        if self.edge.is_active():
            return False
        ctx.info("nginx is not running; starting it.")
        self.edge.start()
        self.settle()
        if not self.edge.is_active():
            raise ProcessError(
                "nginx did not become active after start. " + " ".join(OPERATOR_HINTS)
            )
        ctx.step("start")
        return True

    def reload_or_restart(self) -> bool:
        """Reload, falling back to restart; return ``True`` when nginx ends up active."""
        problems: list[str] = []
        return self._attempt("reload", problems) or self._attempt("restart", problems)

    def settle(self) -> None:
        """Give the process time to come up before checking it."""
        if self.settle_seconds > 0:
            time.sleep(self.settle_seconds)

    def _attempt(self, action: str, problems: list[str]) -> bool:
        try:
            getattr(self.edge, action)()
        except ProcessError as exc:
            problems.append(f"{action}: {exc}")
            return False
        self.settle()
        if self.edge.is_active():
            return True
        problems.append(f"{action}: nginx not active afterwards")
        return False


__all__ = [
    "ApplyAction",
    "ApplyError",
    "ApplyResult",
    "OPERATOR_HINTS",
    "ReloadSupervisor",
]
