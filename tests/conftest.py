"""Shared fixtures: a temporary nginx tree, fake edge server and fake CA."""

from __future__ import annotations

import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from proxyctl.backups import BackupStore
from proxyctl.engine import ProvisioningEngine, RunContext
from proxyctl.errors import AcquisitionError, ConfigSyntaxError, ProcessError
from proxyctl.locking import LockManager
from proxyctl.providers.certbot import CertbotProvider
from proxyctl.providers.nginx import NginxSites
from proxyctl.tls import CertificateInventory, TLSMaterial

NGINX_CONF = """user www-data;
worker_processes auto;

events {
    worker_connections 768;
}

http {
    include /etc/nginx/mime.types;
    include /etc/nginx/sites-enabled/*;
}
"""

SENTINEL = "root /var/www/html"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip slow tests when ``PROXYCTL_FAST_TESTS`` is set."""
    if not os.environ.get("PROXYCTL_FAST_TESTS"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped because PROXYCTL_FAST_TESTS is set.")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_marker)


def write_certificate(directory: Path, domain: str, *, days: int = 60) -> Path:
    """Write a self-signed certbot-style lineage for *domain* into *directory*."""
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    not_before = min(now - timedelta(days=1), now + timedelta(days=days) - timedelta(days=1))
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    live = directory / domain
    live.mkdir(parents=True, exist_ok=True)
    pem = cert.public_bytes(serialization.Encoding.PEM)
    (live / "fullchain.pem").write_bytes(pem)
    (live / "chain.pem").write_bytes(pem)
    (live / "privkey.pem").write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return live / "fullchain.pem"


class FakeEdgeServer:
    """In-memory stand-in for nginx plus systemd."""

    def __init__(self) -> None:
        """Start out healthy: validation passes and the service is active."""
        self.calls: list[str] = []
        self.active = True
        self.validate_failures = 0
        self.validator: Callable[[], None] | None = None
        self.failures: dict[str, int] = {}
        self.down_after: set[str] = set()

    def validate_syntax(self) -> object:
        self.calls.append("validate")
        if self.validator is not None:
            self.validator()
        if self.validate_failures > 0:
            self.validate_failures -= 1
            raise ConfigSyntaxError(
                "nginx: [emerg] unexpected end of file",
                details="nginx: configuration file /etc/nginx/nginx.conf test failed",
            )
        return None

    def reload(self) -> object:
        return self._act("reload")

    def restart(self) -> object:
        return self._act("restart")

    def start(self) -> object:
        return self._act("start")

    def stop(self) -> object:
        return self._act("stop")

    def is_active(self) -> bool:
        return self.active

    def _act(self, action: str) -> object:
        self.calls.append(action)
        if self.failures.get(action, 0) > 0:
            self.failures[action] -= 1
            raise ProcessError(f"systemctl {action} nginx failed (exit 1)")
        if action == "stop":
            self.active = False
        else:
            self.active = action not in self.down_after
        return None


class FakeCertificateAuthority:
    """Certbot stand-in that writes real certificates on success.

    The plugin strategy mimics certbot's nginx installer: it swaps the
    primary location for a static root and adds ``listen 443`` to the
    existing server block.
    """

    def __init__(self, live_dir: Path, sites_available: Path) -> None:
        """Issue into *live_dir*; the plugin edits files in *sites_available*."""
        self.live_dir = live_dir
        self.sites_available = sites_available
        self.standalone_ok = True
        self.plugin_ok = True
        self.renew_ok = True
        self.plugin_mangles_on_failure = False
        self.calls: list[tuple[str, str]] = []

    def issue_standalone(self, domain: str, email: str) -> object:
        self.calls.append(("standalone", domain))
        if not self.standalone_ok:
            raise AcquisitionError("certbot certonly --standalone failed (exit 1): port 80 busy")
        write_certificate(self.live_dir, domain)
        return None

    def issue_via_plugin(self, domain: str, email: str) -> object:
        self.calls.append(("plugin", domain))
        site = self.sites_available / domain
        if not self.plugin_ok:
            if self.plugin_mangles_on_failure:
                site.write_text(site.read_text(encoding="utf-8") + "\n# half-written\n")
            raise AcquisitionError("certbot --nginx failed (exit 1): challenge failed")
        write_certificate(self.live_dir, domain)
        live = self.live_dir / domain
        text = site.read_text(encoding="utf-8")
        marker = "    location / {\n"
        start = text.index(marker) + len(marker)
        end = text.index("\n    }\n", start)
        text = text[:start] + f"        {SENTINEL};\n        index index.html;" + text[end:]
        text = text.replace(
            "    listen 80;\n",
            "    listen 80;\n\n"
            "    listen 443 ssl; # managed by Certbot\n"
            f"    ssl_certificate {live}/fullchain.pem; # managed by Certbot\n"
            f"    ssl_certificate_key {live}/privkey.pem; # managed by Certbot\n",
            1,
        )
        site.write_text(text, encoding="utf-8")
        return None

    def renew(self, domain: str, *, force: bool = False) -> object:
        self.calls.append(("renew", domain))
        if not self.renew_ok:
            raise AcquisitionError("certbot renew failed (exit 1): too many certificates")
        write_certificate(self.live_dir, domain, days=90)
        return None

    def certificate_paths(self, domain: str) -> TLSMaterial | None:
        return CertbotProvider(live_dir=self.live_dir).certificate_paths(domain)


@pytest.fixture
def make_certificate() -> Callable[..., Path]:
    """Return the certificate writer used by the fake CA."""
    return write_certificate


@pytest.fixture
def nginx_root(tmp_path: Path) -> Path:
    """Return an nginx root with ``nginx.conf`` and empty site directories."""
    root = tmp_path / "nginx"
    (root / "sites-available").mkdir(parents=True)
    (root / "sites-enabled").mkdir()
    (root / "nginx.conf").write_text(NGINX_CONF, encoding="utf-8")
    return root


@pytest.fixture
def sites(nginx_root: Path) -> NginxSites:
    """Return a site manager bound to the temporary nginx root."""
    return NginxSites(nginx_root / "sites-available", nginx_root / "sites-enabled")


@pytest.fixture
def edge() -> FakeEdgeServer:
    """Return a healthy fake edge server."""
    return FakeEdgeServer()


@pytest.fixture
def live_dir(tmp_path: Path) -> Path:
    """Return the Let's Encrypt live directory used by the fake CA."""
    path = tmp_path / "letsencrypt" / "live"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def ca(live_dir: Path, nginx_root: Path) -> FakeCertificateAuthority:
    """Return a fake CA whose standalone strategy succeeds."""
    return FakeCertificateAuthority(live_dir, nginx_root / "sites-available")


@pytest.fixture
def backups(tmp_path: Path, nginx_root: Path) -> BackupStore:
    """Return a backup store that snapshots the temporary nginx root."""
    return BackupStore(tmp_path / "backups", nginx_root)


@pytest.fixture
def engine(
    tmp_path: Path,
    sites: NginxSites,
    edge: FakeEdgeServer,
    ca: FakeCertificateAuthority,
    backups: BackupStore,
    live_dir: Path,
) -> ProvisioningEngine:
    """Return an engine wired to the fakes with probes and settle delays off."""
    return ProvisioningEngine(
        sites=sites,
        edge=edge,
        ca=ca,
        backups=backups,
        inventory=CertificateInventory(live_dir),
        locks=LockManager(tmp_path / "run", default_timeout=1.0),
        sentinel=SENTINEL,
        settle_seconds=0,
        probes_enabled=False,
    )


@pytest.fixture
def run() -> RunContext:
    """Return a run context without an operation log."""
    return RunContext()
