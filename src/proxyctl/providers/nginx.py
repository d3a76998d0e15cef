"""Nginx provider: site files on disk and control of the running server."""
from __future__ import annotations

import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import ConfigSyntaxError, ProcessError
from ..templates import write_atomic
from .systemd import SystemdError, SystemdProvider

# Suffixes of per-domain artifacts created next to the site file.
TEMP_SUFFIX = ".tmp"
PRE_PLUGIN_SUFFIX = ".pre-certbot"
OVERWRITE_BACKUP_SUFFIX = ".backup"


class NginxError(ProcessError):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class NginxSites:
    """Manage per-domain files in ``sites-available``/``sites-enabled``."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")

    def site_name(self, domain: str) -> str:
        """Return the canonical site file name for *domain*."""
        return domain.replace("/", "-")

    def site_path(self, domain: str) -> Path:
        """Return the path to the nginx site configuration file."""
        return self.sites_available / self.site_name(domain)

    def enabled_path(self, domain: str) -> Path:
        """Return the path of the symlink in sites-enabled for *domain*."""
        return self.sites_enabled / self.site_name(domain)

    def ensure_directories(self) -> None:
        """Create ``sites-available`` and ``sites-enabled`` when missing."""
        self.sites_available.mkdir(parents=True, exist_ok=True)
        self.sites_enabled.mkdir(parents=True, exist_ok=True)

    def write_site(self, domain: str, content: str) -> bool:
        """Atomically write *content* as the site file for *domain*."""
        return write_atomic(self.site_path(domain), content, mode=0o644)

    def read_site(self, domain: str) -> str:
        """Return the current site file contents."""
        return self.site_path(domain).read_text(encoding="utf-8")

    def enable(self, domain: str) -> None:
        """Enable the site by creating a symlink in sites-enabled."""
        source = self.site_path(domain)
        target = self.enabled_path(domain)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists() or target.is_symlink():
            try:
                if target.resolve() == source.resolve():
                    return
            except FileNotFoundError:
                # Broken symlink; replace it with a fresh one.
                pass
            target.unlink()
        target.symlink_to(source)

    def disable(self, domain: str) -> bool:
        """Remove the sites-enabled entry; return ``True`` when one existed."""
        target = self.enabled_path(domain)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        return True

    def remove(self, domain: str) -> None:
        """Remove both the configuration and symlink for *domain*."""
        self.disable(domain)
        self.site_path(domain).unlink(missing_ok=True)

    def remove_artifacts(self, domain: str, *, keep: Iterable[Path | None] = ()) -> list[Path]:
        """Delete temp and backup-suffixed copies of the site file not listed in *keep*."""
        site = self.site_path(domain)
        kept = {path for path in keep if path is not None}
        removed: list[Path] = []
        candidates = [
            site.with_name(f"{site.name}{TEMP_SUFFIX}"),
            site.with_name(f"{site.name}{PRE_PLUGIN_SUFFIX}"),
            *sorted(site.parent.glob(f"{site.name}{OVERWRITE_BACKUP_SUFFIX}*")),
        ]
        for candidate in candidates:
            if candidate in kept:
                continue
            if candidate.exists() or candidate.is_symlink():
                candidate.unlink()
                removed.append(candidate)
        return removed

    def site_exists(self, domain: str) -> bool:
        """Return True when the site configuration exists."""
        return self.site_path(domain).exists()

    def is_enabled(self, domain: str) -> bool:
        """Return True when the site is enabled via a sites-enabled entry."""
        target = self.enabled_path(domain)
        return target.exists() or target.is_symlink()

    def list_sites(self) -> list[str]:
        """Return site names managed in sites-available (excluding ``default``)."""
        if not self.sites_available.is_dir():
            return []
        names: list[str] = []
        for item in sorted(self.sites_available.iterdir()):
            if not item.is_file() or item.name == "default":
                continue
            if item.name.endswith((TEMP_SUFFIX, PRE_PLUGIN_SUFFIX)):
                continue
            if f"{OVERWRITE_BACKUP_SUFFIX}." in item.name or item.name.startswith("."):
                continue
            names.append(item.name)
        return names


@dataclass(slots=True)
class NginxProvider:
    """Validate the nginx tree and drive the service through systemd."""

    systemd: SystemdProvider = field(default_factory=SystemdProvider)
    nginx_bin: str = "nginx"

    def validate_syntax(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` over the whole tree; raise ConfigSyntaxError on failure."""
        try:
            return self._run_nginx(["-t"])
        except NginxError as exc:
            raise ConfigSyntaxError(str(exc), details=str(exc)) from exc

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Gracefully reload nginx."""
        return self._service("reload")

    def restart(self) -> subprocess.CompletedProcess[str]:
        """Restart nginx."""
        return self._service("restart")

    def start(self) -> subprocess.CompletedProcess[str]:
        """Start nginx."""
        return self._service("start")

    def stop(self) -> subprocess.CompletedProcess[str]:
        """Stop nginx."""
        return self._service("stop")

    def is_active(self) -> bool:
        """Return ``True`` when the nginx unit is running."""
        return self.systemd.is_active()

    # ------------------------------------------------------------------
    def _service(self, action: str) -> subprocess.CompletedProcess[str]:
        try:
            return getattr(self.systemd, action)()
        except SystemdError as exc:
            raise NginxError(str(exc)) from exc

    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.nginx_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise NginxError(f"{self.nginx_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise NginxError(
                f"{self.nginx_bin} {' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = [
    "NginxError",
    "NginxProvider",
    "NginxSites",
    "OVERWRITE_BACKUP_SUFFIX",
    "PRE_PLUGIN_SUFFIX",
    "TEMP_SUFFIX",
]
