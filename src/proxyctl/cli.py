"""Typer command line interface for ``proxyctl``.

Commands build a :class:`RuntimeContext` once per invocation, run inside a
structured-logging operation scope, and translate engine summaries into
rich tables and exit codes.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupStore
from .config import AppConfig, ConfigError, load_config
from .engine import OperationSummary, ProvisioningEngine, RunContext, SummaryStatus
from .errors import ValidationError
from .exit_codes import ExitCode
from .locking import LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import ProxyConfig, parse_backend_address
from .providers import NginxSites
from .tls import CertificateInventory, CertificateRecord, CertificateStatus

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to proxyctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision nginx reverse proxies with optional Let's Encrypt TLS.

        Every change runs as a transaction: the nginx tree is snapshotted
        first and restored automatically if validation or activation fails.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
backups_app = typer.Typer(help="Inspect configuration snapshots.")
app.add_typer(config_app, name="config")
app.add_typer(backups_app, name="backup")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    engine: ProvisioningEngine
    sites: NginxSites
    backups: BackupStore
    inventory: CertificateInventory


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    logger = StructuredLogger(config.logs_dir)
    engine = ProvisioningEngine.from_config(config)
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        engine=engine,
        sites=engine.sites,
        backups=engine.backups,
        inventory=CertificateInventory(config.certbot.live_dir, config.tls.warn_expiry_days),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the proxyctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"proxyctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _format_status(status: SummaryStatus) -> str:
    if status is SummaryStatus.SUCCESS:
        return "[green]SUCCESS[/green]"
    if status is SummaryStatus.DEGRADED:
        return "[yellow]DEGRADED[/yellow]"
    return "[red]FAILED[/red]"


def _render_summary(summary: OperationSummary, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=summary.to_dict())
        return
    table = Table(show_header=False, title=f"{summary.operation} {summary.domain}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Status", _format_status(summary.status))
    table.add_row("Result", summary.message)
    if summary.transaction is not None:
        steps = ", ".join(step.value for step in summary.transaction.steps) or "(none)"
        table.add_row("Steps", steps)
        if summary.transaction.backup is not None:
            table.add_row("Backup", str(summary.transaction.backup.path))
    if summary.acquisition is not None:
        table.add_row("Certificate", summary.acquisition.state.value)
    if summary.redirect is not None:
        table.add_row("Redirect", summary.redirect.outcome.value)
    if summary.rollback is not None:
        table.add_row("Rollback", summary.rollback.state.value)
    for warning in summary.warnings:
        table.add_row("[yellow]Warning[/yellow]", warning)
    for error in summary.errors:
        table.add_row("[red]Error[/red]", error)
    console.print(table)


def _finish(op: OperationScope, summary: OperationSummary, *, json_output: bool) -> int:
    """Record *summary* on *op*, print it and return its exit code."""
    _render_summary(summary, json_output=json_output)
    context: Mapping[str, object] = summary.to_dict()
    changed = len(summary.transaction.steps) if summary.transaction is not None else 0
    if summary.status is SummaryStatus.SUCCESS:
        op.success(summary.message, changed=changed, warnings=summary.warnings, context=context)
    elif summary.status is SummaryStatus.DEGRADED:
        op.warning(
            summary.message,
            warnings=summary.warnings,
            errors=summary.errors,
            changed=changed,
            context=context,
            rc=int(summary.exit_code),
        )
    else:
        op.error(
            summary.message,
            errors=summary.errors or [summary.message],
            warnings=summary.warnings,
            rc=int(summary.exit_code),
            context=context,
        )
    return int(summary.exit_code)


def _exit_with(code: int) -> None:
    if code != ExitCode.OK:
        raise typer.Exit(code=code)


@app.command()
def install(
    ctx: typer.Context,
    domain: str = typer.Option(..., "--domain", "-d", help="Public domain name to serve."),
    backend: str = typer.Option(
        ...,
        "--backend",
        "-b",
        help="Backend host, host:port or URL (e.g. http://10.0.0.5:4000).",
    ),
    port: int | None = typer.Option(
        None,
        "--port",
        "-p",
        help="Backend port (overrides a port embedded in --backend).",
    ),
    ssl: bool = typer.Option(False, "--ssl/--no-ssl", help="Request a Let's Encrypt certificate."),
    email: str | None = typer.Option(
        None,
        "--email",
        help="Registration email for Let's Encrypt (required with --ssl).",
    ),
    force_https: bool = typer.Option(
        False,
        "--force-https",
        help="Redirect HTTP to HTTPS once a certificate is installed.",
    ),
    overwrite: bool = typer.Option(
        False,
        "--overwrite",
        help="Replace an existing configuration for the domain (a copy is kept).",
    ),
    renew_existing: bool = typer.Option(
        False,
        "--renew-existing",
        help="Force-renew an existing certificate instead of reusing it as-is.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create (or replace) a reverse proxy for DOMAIN."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "install",
        args={
            "domain": domain,
            "backend": backend,
            "port": port,
            "ssl": ssl,
            "email": email,
            "force_https": force_https,
            "overwrite": overwrite,
            "renew_existing": renew_existing,
        },
        target={"kind": "site", "domain": domain},
    ) as op:
        try:
            host, backend_port = parse_backend_address(backend, port)
            config = ProxyConfig.create(
                domain=domain,
                backend_host=host,
                backend_port=backend_port,
                ssl_enabled=ssl,
                ssl_email=email,
                force_https=force_https,
            )
        except ValidationError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        if force_https and not ssl:
            console.print("[yellow]--force-https has no effect without --ssl.[/yellow]")

        run = RunContext(scope=op)
        try:
            summary = runtime.engine.install(
                config, run, overwrite=overwrite, renew_existing=renew_existing
            )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        code = _finish(op, summary, json_output=json_output)
    _exit_with(code)


@app.command()
def remove(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain whose reverse proxy should be removed."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Disable and delete the reverse proxy for DOMAIN."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "remove",
        args={"domain": domain},
        target={"kind": "site", "domain": domain},
    ) as op:
        run = RunContext(scope=op)
        try:
            summary = runtime.engine.remove(domain, run)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        code = _finish(op, summary, json_output=json_output)
    _exit_with(code)


@app.command()
def renew(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Certificate name (domain) to renew."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Force-renew the certificate for DOMAIN and reload nginx if the config is valid."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "renew",
        args={"domain": domain},
        target={"kind": "certificate", "domain": domain},
    ) as op:
        run = RunContext(scope=op)
        try:
            summary = runtime.engine.renew(domain, run)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        code = _finish(op, summary, json_output=json_output)
    _exit_with(code)


def _format_certificate_status(record: CertificateRecord, inventory: CertificateInventory) -> str:
    if record.status is CertificateStatus.EXPIRED:
        return "[red]expired[/red]"
    if inventory.is_expiring(record):
        return "[yellow]expiring[/yellow]"
    return f"[green]{record.status.value}[/green]"


@app.command()
def certs(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List certificates, soonest expiry first."""
    runtime = _get_runtime(ctx)
    records = runtime.inventory.records()
    with runtime.logger.operation(
        "certs",
        args={"json": json_output},
        target={"kind": "certificates"},
    ) as op:
        if json_output:
            console.print_json(data={"certificates": [record.to_dict() for record in records]})
            op.success("Reported certificates as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Domain", style="bold")
        table.add_column("Status")
        table.add_column("Expires")
        table.add_column("Days left", justify="right")
        table.add_column("Issued via")
        if not records:
            table.add_row("(none)", "", "", "", "")
        for record in records:
            table.add_row(
                record.domain,
                _format_certificate_status(record, runtime.inventory),
                record.expiry.strftime("%Y-%m-%d") if record.expiry else "unknown",
                str(record.days_remaining) if record.days_remaining is not None else "-",
                record.issued_strategy.value,
            )
        console.print(table)
        op.success("Reported certificates.", changed=0)


@app.command("list")
def list_sites(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List configured reverse-proxy sites."""
    runtime = _get_runtime(ctx)
    names = runtime.sites.list_sites()
    entries = [
        {"domain": name, "enabled": runtime.sites.is_enabled(name)} for name in names
    ]
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "sites"},
    ) as op:
        if json_output:
            console.print_json(data={"sites": entries})
            op.success("Reported sites as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Domain", style="bold")
        table.add_column("Enabled")
        if not entries:
            table.add_row("(none)", "")
        for entry in entries:
            table.add_row(str(entry["domain"]), "yes" if entry["enabled"] else "no")
        console.print(table)
        op.success("Reported sites.", changed=0)


@app.command()
def logs(
    ctx: typer.Context,
    command: str = typer.Option(
        "install",
        "--command",
        help="Show the latest record for this command.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the most recent recorded attempt of a command (install by default)."""
    runtime = _get_runtime(ctx)
    matches = [
        record for record in runtime.logger.read_records() if record.get("command") == command
    ]
    if not matches:
        console.print(f"No '{command}' attempts recorded in {runtime.logger.operations_log_path}.")
        raise typer.Exit(code=0)
    latest = matches[-1]
    if json_output:
        console.print_json(data=latest)
        return

    result = latest.get("result")
    result_map = result if isinstance(result, dict) else {}
    table = Table(show_header=False, title=f"Last {command} ({latest.get('started_at', '?')})")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Status", str(result_map.get("status", "unknown")))
    table.add_row("Message", str(result_map.get("message", "")))
    table.add_row("Target", json.dumps(latest.get("target", {}), sort_keys=True))
    steps = latest.get("steps")
    for step in steps if isinstance(steps, list) else []:
        if isinstance(step, dict):
            table.add_row(f"step [{step.get('status', '?')}]", str(step.get("name", "")))
    for key in ("warnings", "errors"):
        values = result_map.get(key)
        for value in values if isinstance(values, list) else []:
            table.add_row(key[:-1].capitalize(), str(value))
    console.print(table)
    console.print(f"Full log: {runtime.logger.human_log_path}")


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@backups_app.command("list")
def backup_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List snapshots taken before install and removal operations."""
    runtime = _get_runtime(ctx)
    refs = runtime.backups.list_backups()
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backups"},
    ) as op:
        if json_output:
            console.print_json(data={"backups": [ref.to_dict() for ref in refs]})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Label", style="bold")
        table.add_column("Taken")
        table.add_column("Files", justify="right")
        table.add_column("Path")
        if not refs:
            table.add_row("(none)", "", "", "")
        for ref in refs:
            files = "absent" if ref.absent else str(len(ref.captured))
            table.add_row(ref.label, ref.timestamp, files, str(ref.path))
        console.print(table)
        op.success("Reported backups.", changed=0)


__all__ = ["app"]
