"""Tests for the proxyctl command line interface."""
from __future__ import annotations

import json
from pathlib import Path

import yaml
from typer.testing import CliRunner

from proxyctl import __version__
from proxyctl.cli import app

from conftest import NGINX_CONF

runner = CliRunner()


def _prepare_environment(
    tmp_path: Path,
    *,
    certbot_exit: int = 1,
    config_overrides: dict[str, object] | None = None,
) -> tuple[dict[str, str], Path]:
    """Write a config pointing every path and binary into *tmp_path*."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)

    def _write_stub(name: str, *, content: str = "#!/bin/sh\nexit 0\n") -> Path:
        path = bin_dir / name
        path.write_text(content, encoding="utf-8")
        path.chmod(0o755)
        return path

    _write_stub("nginx")
    _write_stub("systemctl")
    _write_stub("certbot", content=f"#!/bin/sh\necho 'certbot stub'\nexit {certbot_exit}\n")

    nginx_root = tmp_path / "nginx"
    (nginx_root / "sites-available").mkdir(parents=True)
    (nginx_root / "sites-enabled").mkdir()
    (nginx_root / "nginx.conf").write_text(NGINX_CONF, encoding="utf-8")
    live_dir = tmp_path / "letsencrypt" / "live"
    live_dir.mkdir(parents=True)

    config: dict[str, object] = {
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 2.0,
        "nginx": {
            "root": str(nginx_root),
            "nginx_bin": str(bin_dir / "nginx"),
            "systemctl_bin": str(bin_dir / "systemctl"),
            "settle_seconds": 0,
        },
        "certbot": {
            "certbot_bin": str(bin_dir / "certbot"),
            "live_dir": str(live_dir),
        },
        "backups": {"root": str(tmp_path / "backups")},
        "probes": {"enabled": False},
    }
    if config_overrides:
        config.update(config_overrides)
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"PROXYCTL_CONFIG_FILE": str(config_path)}, nginx_root


def _install(env: dict[str, str], *extra: str) -> object:
    return runner.invoke(
        app,
        ["install", "--domain", "example.com", "--backend", "10.0.0.5:4000", *extra],
        env=env,
    )


def test_version_flag() -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_help_lists_commands(tmp_path: Path) -> None:
    """Running without a command shows the available commands."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, [], env=env)

    assert result.exit_code == 0
    for command in ("install", "remove", "renew", "certs", "list", "logs"):
        assert command in result.stdout


def test_config_show(tmp_path: Path) -> None:
    """The merged configuration is rendered as a table or JSON."""
    env, nginx_root = _prepare_environment(tmp_path)

    table = runner.invoke(app, ["config", "show"], env=env)
    payload = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert table.exit_code == 0
    assert "lock_timeout" in table.stdout
    assert payload.exit_code == 0
    data = json.loads(payload.stdout)
    assert data["nginx"]["root"] == str(nginx_root)
    assert data["nginx"]["sites_available"] == str(nginx_root / "sites-available")
    assert data["probes"]["enabled"] is False


def test_invalid_config_exits_with_validation(tmp_path: Path) -> None:
    """Unknown keys in the config file stop the CLI before any command runs."""
    env, _ = _prepare_environment(tmp_path, config_overrides={"bogus": True})

    result = runner.invoke(app, ["list"], env=env)

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout


def test_install_http_only(tmp_path: Path) -> None:
    """An HTTP-only install writes, enables and records the operation."""
    env, nginx_root = _prepare_environment(tmp_path)

    result = _install(env, "--json")

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["status"] == "success"
    assert payload["steps"] == ["file-written", "symlink-created", "applied"]
    site = nginx_root / "sites-available" / "example.com"
    assert "proxy_pass http://10.0.0.5:4000;" in site.read_text(encoding="utf-8")
    assert (nginx_root / "sites-enabled" / "example.com").is_symlink()

    operations = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8")
    record = json.loads(operations.splitlines()[-1])
    assert record["command"] == "install"
    assert record["result"]["status"] == "success"


def test_install_twice_requires_overwrite(tmp_path: Path) -> None:
    """A second install without ``--overwrite`` is refused."""
    env, _ = _prepare_environment(tmp_path)
    assert _install(env).exit_code == 0

    again = _install(env)
    replaced = _install(env, "--overwrite")

    assert again.exit_code == 2
    assert "--overwrite" in again.stdout
    assert replaced.exit_code == 0, replaced.stdout


def test_install_rejects_bad_port(tmp_path: Path) -> None:
    """Port validation happens before anything touches nginx."""
    env, nginx_root = _prepare_environment(tmp_path)

    result = runner.invoke(
        app,
        ["install", "-d", "example.com", "-b", "10.0.0.5", "--port", "70000"],
        env=env,
    )

    assert result.exit_code == 2
    assert not (nginx_root / "sites-available" / "example.com").exists()
    assert not (tmp_path / "backups").exists()


def test_install_ssl_failure_is_degraded(tmp_path: Path) -> None:
    """A failing certbot leaves a working HTTP proxy and a degraded exit code."""
    env, nginx_root = _prepare_environment(tmp_path, certbot_exit=1)

    result = _install(env, "--ssl", "--email", "ops@example.com", "--json")

    assert result.exit_code == 5, result.stdout
    payload = json.loads(result.stdout)
    assert payload["status"] == "degraded"
    assert payload["certificate"][-1] == "resolved-degraded"
    site = (nginx_root / "sites-available" / "example.com").read_text(encoding="utf-8")
    assert "listen 443" not in site
    assert "proxy_pass http://10.0.0.5:4000;" in site

    logs = runner.invoke(app, ["logs", "--json"], env=env)
    assert logs.exit_code == 0
    assert json.loads(logs.stdout)["result"]["status"] == "warning"


def test_list_and_remove(tmp_path: Path) -> None:
    """Installed sites are listed, then removed with a snapshot."""
    env, nginx_root = _prepare_environment(tmp_path)
    assert _install(env).exit_code == 0

    listed = runner.invoke(app, ["list", "--json"], env=env)
    assert listed.exit_code == 0
    assert json.loads(listed.stdout) == {"sites": [{"domain": "example.com", "enabled": True}]}

    removed = runner.invoke(app, ["remove", "example.com"], env=env)
    assert removed.exit_code == 0, removed.stdout
    assert not (nginx_root / "sites-available" / "example.com").exists()

    missing = runner.invoke(app, ["remove", "example.com"], env=env)
    assert missing.exit_code == 2

    backups = runner.invoke(app, ["backup", "list", "--json"], env=env)
    labels = [entry["label"] for entry in json.loads(backups.stdout)["backups"]]
    assert labels == ["pre_install_example.com", "pre_removal_example.com"]


def test_certs_and_renew_without_certificates(tmp_path: Path) -> None:
    """An empty live directory lists nothing and renewal reports the absence."""
    env, _ = _prepare_environment(tmp_path)

    certs = runner.invoke(app, ["certs", "--json"], env=env)
    table = runner.invoke(app, ["certs"], env=env)
    renew = runner.invoke(app, ["renew", "example.com"], env=env)

    assert certs.exit_code == 0
    assert json.loads(certs.stdout) == {"certificates": []}
    assert "(none)" in table.stdout
    assert renew.exit_code == 2
    assert "No certificate found" in renew.stdout


def test_logs_without_history(tmp_path: Path) -> None:
    """``logs`` explains when no attempt has been recorded yet."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["logs"], env=env)

    assert result.exit_code == 0
    assert "No 'install' attempts recorded" in result.stdout
