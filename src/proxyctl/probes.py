"""Advisory DNS and backend reachability probes.

Probe failures never block a transaction; they only surface as
:class:`~proxyctl.errors.ConnectivityWarning` entries in the summary.
"""
from __future__ import annotations

import socket
from dataclasses import dataclass

from .errors import ConnectivityWarning
from .models import ProxyConfig


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of a single probe."""

    name: str
    ok: bool
    detail: str
    addresses: tuple[str, ...] = ()

    @property
    def warning(self) -> ConnectivityWarning | None:
        """Return the advisory warning for a failed probe."""
        if self.ok:
            return None
        return ConnectivityWarning(self.detail)


def resolve_domain(domain: str) -> ProbeResult:
    """Check that *domain* resolves to at least one address."""
    try:
        infos = socket.getaddrinfo(domain, None)
    except (socket.gaierror, UnicodeError) as exc:
        return ProbeResult(
            name="dns",
            ok=False,
            detail=(
                f"Domain {domain} does not resolve ({exc}); make sure its DNS "
                "A record points to this server before requesting a certificate."
            ),
        )
    addresses = tuple(sorted({str(info[4][0]) for info in infos}))
    return ProbeResult(
        name="dns",
        ok=True,
        detail=f"{domain} resolves to {', '.join(addresses)}",
        addresses=addresses,
    )


def check_backend(host: str, port: int, *, timeout: float = 5.0) -> ProbeResult:
    """Try a TCP connection to the backend within *timeout* seconds."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except OSError as exc:
        return ProbeResult(
            name="backend",
            ok=False,
            detail=(
                f"Cannot connect to backend {host}:{port} ({exc}); "
                "the proxy will return 502 until the service is running."
            ),
        )
    return ProbeResult(name="backend", ok=True, detail=f"Backend {host}:{port} is reachable")


def run_probes(config: ProxyConfig, *, timeout: float = 5.0) -> list[ProbeResult]:
    """Run the DNS probe (SSL installs only) and the backend probe."""
    results: list[ProbeResult] = []
    if config.ssl_enabled:
        results.append(resolve_domain(config.domain))
    results.append(check_backend(config.backend_host, config.backend_port, timeout=timeout))
    return results


__all__ = ["ProbeResult", "check_backend", "resolve_domain", "run_probes"]
