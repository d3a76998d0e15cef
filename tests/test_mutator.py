"""Tests for redirect insertion, HTTPS appending and plugin repair."""
from __future__ import annotations

from pathlib import Path

import pytest

from proxyctl.engine import ConfigMutator, ConfigSynthesizer, RedirectOutcome, RestoreOutcome
from proxyctl.engine.blocks import REDIRECT_DIRECTIVE, find_server_blocks, has_proxy, has_redirect
from proxyctl.errors import ConfigSyntaxError
from proxyctl.models import ProxyConfig
from proxyctl.tls import TLSMaterial

from conftest import SENTINEL, FakeEdgeServer


@pytest.fixture
def config() -> ProxyConfig:
    """Return an SSL proxy definition."""
    return ProxyConfig.create(
        domain="example.com",
        backend_host="127.0.0.1",
        backend_port=3000,
        ssl_enabled=True,
        ssl_email="ops@example.com",
        force_https=True,
    )


@pytest.fixture
def material(tmp_path: Path) -> TLSMaterial:
    """Return certificate paths; the files need not exist for rendering."""
    live = tmp_path / "live" / "example.com"
    return TLSMaterial(certificate=live / "fullchain.pem", key=live / "privkey.pem")


@pytest.fixture
def mutator(edge: FakeEdgeServer) -> ConfigMutator:
    """Return a mutator validating through the fake edge server."""
    return ConfigMutator(edge, ConfigSynthesizer(), sentinel=SENTINEL)


def _write_full_site(path: Path, config: ProxyConfig, material: TLSMaterial) -> str:
    text = ConfigSynthesizer().render_site(config, material)
    path.write_text(text, encoding="utf-8")
    return text


def test_insert_redirect_replaces_http_location(
    tmp_path: Path, mutator: ConfigMutator, config: ProxyConfig, material: TLSMaterial
) -> None:
    """The HTTP block redirects, the HTTPS block keeps proxying."""
    site = tmp_path / "example.com"
    _write_full_site(site, config, material)

    result = mutator.insert_redirect(site)

    assert result.outcome is RedirectOutcome.REPLACED
    assert result.applied
    lines = site.read_text(encoding="utf-8").splitlines()
    http, https = find_server_blocks(lines)
    assert has_redirect(lines, http)
    assert not has_proxy(lines, http)
    assert has_proxy(lines, https)
    assert not has_redirect(lines, https)
    assert not site.with_name("example.com.tmp").exists()


def test_insert_redirect_twice_is_a_no_op(
    tmp_path: Path, mutator: ConfigMutator, config: ProxyConfig, material: TLSMaterial
) -> None:
    """A second insertion detects the redirect and leaves the bytes alone."""
    site = tmp_path / "example.com"
    _write_full_site(site, config, material)
    mutator.insert_redirect(site)
    after_first = site.read_bytes()

    result = mutator.insert_redirect(site)

    assert result.outcome is RedirectOutcome.ALREADY_PRESENT
    assert not result.applied
    assert site.read_bytes() == after_first
    assert site.read_text(encoding="utf-8").count(REDIRECT_DIRECTIVE) == 1


def test_insert_redirect_falls_back_after_rejection(
    tmp_path: Path,
    edge: FakeEdgeServer,
    mutator: ConfigMutator,
    config: ProxyConfig,
    material: TLSMaterial,
) -> None:
    """When the first candidate fails validation the fallback placement is used."""
    site = tmp_path / "example.com"
    _write_full_site(site, config, material)
    edge.validate_failures = 1

    result = mutator.insert_redirect(site)

    assert result.outcome is RedirectOutcome.INSERTED_AFTER_SERVER_NAME
    assert len(result.attempts) == 1
    assert "rejected by syntax check" in result.attempts[0]
    lines = site.read_text(encoding="utf-8").splitlines()
    http = find_server_blocks(lines)[0]
    assert http.server_name_line is not None
    assert lines[http.server_name_line + 3] == f"    {REDIRECT_DIRECTIVE}"


def test_insert_redirect_fails_cleanly(
    tmp_path: Path,
    edge: FakeEdgeServer,
    mutator: ConfigMutator,
    config: ProxyConfig,
    material: TLSMaterial,
) -> None:
    """If every strategy is rejected the file is restored byte-for-byte."""
    site = tmp_path / "example.com"
    original = _write_full_site(site, config, material)
    edge.validate_failures = 2

    result = mutator.insert_redirect(site)

    assert result.outcome is RedirectOutcome.FAILED
    assert result.degraded
    assert len(result.attempts) == 2
    assert site.read_text(encoding="utf-8") == original
    assert not site.with_name("example.com.tmp").exists()


def test_insert_redirect_requires_https_block(
    tmp_path: Path, mutator: ConfigMutator, config: ProxyConfig
) -> None:
    """Redirecting without an HTTPS listener would take the site offline."""
    site = tmp_path / "example.com"
    original = ConfigSynthesizer().render_http_block(config)
    site.write_text(original, encoding="utf-8")

    result = mutator.insert_redirect(site)

    assert result.outcome is RedirectOutcome.FAILED
    assert site.read_text(encoding="utf-8") == original


def test_append_https_block_once(
    tmp_path: Path, mutator: ConfigMutator, config: ProxyConfig, material: TLSMaterial
) -> None:
    """The HTTPS block is appended only when nothing listens on 443 yet."""
    site = tmp_path / "example.com"
    site.write_text(ConfigSynthesizer().render_http_block(config), encoding="utf-8")

    assert mutator.append_https_block(site, config, material) is True
    assert mutator.append_https_block(site, config, material) is False
    text = site.read_text(encoding="utf-8")
    assert text.count("listen 443") == 1
    assert text == ConfigSynthesizer().render_site(config, material)


def _plugin_edit(text: str) -> str:
    marker = "    location / {\n"
    start = text.index(marker) + len(marker)
    end = text.index("\n    }\n", start)
    return text[:start] + f"        {SENTINEL};\n        index index.html;" + text[end:]


def test_restore_proxy_replaces_sentinel(
    tmp_path: Path, mutator: ConfigMutator, config: ProxyConfig
) -> None:
    """Static-root placeholders are swapped back to the proxy stanza."""
    site = tmp_path / "example.com"
    pristine = ConfigSynthesizer().render_http_block(config)
    backup = tmp_path / "example.com.pre-certbot"
    backup.write_text(pristine, encoding="utf-8")
    site.write_text(_plugin_edit(pristine), encoding="utf-8")

    result = mutator.restore_proxy_after_external_mutation(site, config, backup)

    assert result.outcome is RestoreOutcome.RESTORED
    assert result.locations == 1
    assert site.read_text(encoding="utf-8") == pristine


def test_restore_proxy_not_needed(
    tmp_path: Path, mutator: ConfigMutator, config: ProxyConfig
) -> None:
    """Files without the placeholder are left alone."""
    site = tmp_path / "example.com"
    pristine = ConfigSynthesizer().render_http_block(config)
    site.write_text(pristine, encoding="utf-8")

    result = mutator.restore_proxy_after_external_mutation(site, config, site)

    assert result.outcome is RestoreOutcome.NOT_NEEDED
    assert site.read_text(encoding="utf-8") == pristine


def test_restore_proxy_reverts_to_backup_when_rejected(
    tmp_path: Path,
    edge: FakeEdgeServer,
    mutator: ConfigMutator,
    config: ProxyConfig,
) -> None:
    """A repaired file that fails validation is replaced by the pre-plugin copy."""
    site = tmp_path / "example.com"
    pristine = ConfigSynthesizer().render_http_block(config)
    backup = tmp_path / "example.com.pre-certbot"
    backup.write_text(pristine, encoding="utf-8")
    site.write_text(_plugin_edit(pristine), encoding="utf-8")

    def reject() -> None:
        if "proxy_pass" in site.read_text(encoding="utf-8"):
            raise ConfigSyntaxError("nginx: [emerg] host not found in upstream")

    edge.validator = reject

    result = mutator.restore_proxy_after_external_mutation(site, config, backup)

    assert result.outcome is RestoreOutcome.REVERTED_TO_BACKUP
    assert site.read_text(encoding="utf-8") == pristine
