"""Certbot provider implementing the certificate authority client."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import AcquisitionError
from ..tls import TLSMaterial


class CertbotError(AcquisitionError):
    """Raised when a certbot invocation fails."""


@dataclass(slots=True)
class CertbotProvider:
    """Issue and renew Let's Encrypt certificates through ``certbot``."""

    certbot_bin: str = "certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")

    def issue_standalone(self, domain: str, email: str) -> subprocess.CompletedProcess[str]:
        """Issue via the standalone HTTP-01 server (port 80 must be free)."""
        return self._run(
            [
                "certonly",
                "--standalone",
                "--non-interactive",
                "--agree-tos",
                "--email",
                email,
                "-d",
                domain,
                "--preferred-challenges",
                "http",
            ]
        )

    def issue_via_plugin(self, domain: str, email: str) -> subprocess.CompletedProcess[str]:
        """Issue via the nginx plugin, which edits the live site config."""
        return self._run(
            [
                "--nginx",
                "--non-interactive",
                "--agree-tos",
                "--email",
                email,
                "-d",
                domain,
            ]
        )

    def renew(self, domain: str, *, force: bool = False) -> subprocess.CompletedProcess[str]:
        """Renew the certificate named after *domain*."""
        args = ["renew", "--cert-name", domain]
        if force:
            args.append("--force-renewal")
        return self._run(args)

    def certificate_paths(self, domain: str) -> TLSMaterial | None:
        """Return the live certificate/key pair for *domain* when present."""
        live = self.live_dir / domain
        certificate = live / "fullchain.pem"
        key = live / "privkey.pem"
        if not certificate.is_file():
            return None
        chain = live / "chain.pem"
        return TLSMaterial(
            certificate=certificate,
            key=key,
            chain=chain if chain.is_file() else None,
        )

    # ------------------------------------------------------------------
    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.certbot_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CertbotError(f"{self.certbot_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise CertbotError(
                f"{self.certbot_bin} {' '.join(args[:2])} failed "
                f"(exit {result.returncode}): {message}"
            )
        return result


__all__ = ["CertbotError", "CertbotProvider"]
