"""Transactional install, removal and renewal of reverse-proxy sites.

Every mutating operation runs under a per-domain lock and a fresh snapshot.
Fatal failures (a rejected configuration, an unusable edge server, I/O
errors while writing) unwind the transaction through :meth:`rollback`.
Certificate failures and probe warnings never unwind; they downgrade the
summary instead. The one exception is :class:`ApplyError`: when nginx will not
run even with the new site disabled, the engine stops and leaves the system
for the operator rather than guessing further.
"""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from ..backups import BackupError, BackupRef, BackupStore, RestoreReport, copy_into
from ..config import AppConfig
from ..errors import ConfigSyntaxError, ProxyctlError
from ..exit_codes import ExitCode
from ..locking import LockManager
from ..models import ProxyConfig, normalize_domain
from ..probes import run_probes
from ..providers.certbot import CertbotProvider
from ..providers.nginx import OVERWRITE_BACKUP_SUFFIX, NginxProvider, NginxSites
from ..providers.systemd import SystemdProvider
from ..templates import TemplateEngine, TemplateRenderError
from ..tls import CertificateInventory, CertificateStatus
from .certificates import AcquisitionResult, CertificateAcquisition, CertificateRenewal
from .context import RunContext
from .interfaces import CertificateAuthority, EdgeServer
from .mutator import ConfigMutator, RedirectResult
from .supervisor import ApplyError, ReloadSupervisor
from .synthesizer import ConfigSynthesizer


class TransactionStep(str, Enum):
    """Reversible actions recorded by a transaction, in the order taken."""

    OVERWRITE_BACKUP = "overwrite-backup"
    EDGE_STARTED = "edge-started"
    FILE_WRITTEN = "file-written"
    SYMLINK_CREATED = "symlink-created"
    APPLIED = "applied"
    CERTIFICATE_ACQUIRED = "certificate-acquired"
    HTTPS_APPENDED = "https-appended"
    REDIRECT_INSERTED = "redirect-inserted"
    SYMLINK_REMOVED = "symlink-removed"
    FILE_REMOVED = "file-removed"


_MUTATING_STEPS = frozenset(TransactionStep) - {TransactionStep.APPLIED}


class TransactionOutcome(str, Enum):
    """Terminal state of a transaction."""

    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled-back"
    ABORTED = "aborted"


class SummaryStatus(str, Enum):
    """Headline result shown to the operator."""

    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"


class RollbackState(str, Enum):
    """System state after a rollback."""

    RESTORED = "restored"
    NEEDS_MANUAL_INTERVENTION = "needs-manual-intervention"


@dataclass(slots=True)
class Transaction:
    """Ephemeral record of one install or removal; never persisted."""

    domain: str
    backup: BackupRef | None
    site_existed: bool
    link_existed: bool
    overwrite_copy: Path | None = None
    steps: list[TransactionStep] = field(default_factory=list)
    outcome: TransactionOutcome = TransactionOutcome.PENDING

    def record(self, step: TransactionStep, ctx: RunContext, detail: object = None) -> None:
        """Append *step* and mirror it into the operation log."""
        self.steps.append(step)
        ctx.step(step.value, detail=detail)

    @property
    def mutated(self) -> bool:
        """Return ``True`` once anything on disk or in the process changed."""
        return any(step in _MUTATING_STEPS for step in self.steps)


@dataclass(slots=True)
class RollbackReport:
    """What :meth:`ProvisioningEngine.rollback` managed to put back."""

    state: RollbackState
    removed: list[str] = field(default_factory=list)
    restored: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "removed": list(self.removed),
            "restored": list(self.restored),
            "failures": dict(self.failures),
            "messages": list(self.messages),
        }


@dataclass(slots=True)
class OperationSummary:
    """Final, operator-facing result of an engine operation."""

    operation: str
    domain: str
    status: SummaryStatus
    message: str
    exit_code: ExitCode
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    transaction: Transaction | None = None
    acquisition: AcquisitionResult | None = None
    redirect: RedirectResult | None = None
    rollback: RollbackReport | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` only for full success."""
        return self.status is SummaryStatus.SUCCESS

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        data: dict[str, object] = {
            "operation": self.operation,
            "domain": self.domain,
            "status": self.status.value,
            "message": self.message,
            "exit_code": int(self.exit_code),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }
        if self.transaction is not None:
            data["steps"] = [step.value for step in self.transaction.steps]
            data["outcome"] = self.transaction.outcome.value
            if self.transaction.backup is not None:
                data["backup"] = str(self.transaction.backup.path)
        if self.acquisition is not None:
            data["certificate"] = [state.value for state in self.acquisition.trail]
        if self.redirect is not None:
            data["redirect"] = self.redirect.outcome.value
        if self.rollback is not None:
            data["rollback"] = self.rollback.to_dict()
        return data


class _Unwind(Exception):
    """Internal signal: the transaction must be rolled back."""

    def __init__(self, message: str, exit_code: ExitCode) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ProvisioningEngine:
    """Sequence backups, synthesis, mutation, certificates and reloads."""

    def __init__(
        self,
        *,
        sites: NginxSites,
        edge: EdgeServer,
        ca: CertificateAuthority,
        backups: BackupStore,
        inventory: CertificateInventory,
        synthesizer: ConfigSynthesizer | None = None,
        locks: LockManager | None = None,
        sentinel: str = "root /var/www/html",
        settle_seconds: float = 1.0,
        probes_enabled: bool = True,
        probe_timeout: float = 5.0,
        lock_timeout: float | None = None,
    ) -> None:
        """Build the engine's components around the given collaborators."""
        self.sites = sites
        self.edge = edge
        self.ca = ca
        self.backups = backups
        self.locks = locks
        self.synthesizer = synthesizer or ConfigSynthesizer()
        self.mutator = ConfigMutator(edge, self.synthesizer, sentinel=sentinel)
        self.supervisor = ReloadSupervisor(edge, sites, settle_seconds=settle_seconds)
        self.acquisition = CertificateAcquisition(
            ca, edge, self.supervisor, self.mutator, sites, backups
        )
        self.renewal = CertificateRenewal(ca, edge, inventory)
        self.probes_enabled = probes_enabled
        self.probe_timeout = probe_timeout
        self.lock_timeout = lock_timeout

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        edge: EdgeServer | None = None,
        ca: CertificateAuthority | None = None,
    ) -> ProvisioningEngine:
        """Create an engine backed by the real nginx/systemd/certbot providers."""
        nginx = config.nginx
        systemd = SystemdProvider(unit=nginx.service, systemctl_bin=nginx.systemctl_bin)
        return cls(
            sites=NginxSites(nginx.sites_available, nginx.sites_enabled),
            edge=edge or NginxProvider(systemd=systemd, nginx_bin=nginx.nginx_bin),
            ca=ca or CertbotProvider(config.certbot.certbot_bin, config.certbot.live_dir),
            backups=BackupStore(config.backups.root, nginx.root),
            inventory=CertificateInventory(config.certbot.live_dir, config.tls.warn_expiry_days),
            synthesizer=ConfigSynthesizer(TemplateEngine.with_overrides(config.templates_dir)),
            locks=LockManager(config.runtime_dir, config.lock_timeout),
            sentinel=config.certbot.webroot_sentinel,
            settle_seconds=nginx.settle_seconds,
            probes_enabled=config.probes.enabled,
            probe_timeout=config.probes.connect_timeout,
            lock_timeout=config.lock_timeout,
        )

    # ------------------------------------------------------------------
    # install
    def install(
        self,
        config: ProxyConfig,
        ctx: RunContext,
        *,
        overwrite: bool = False,
        renew_existing: bool = False,
    ) -> OperationSummary:
        """Provision the reverse proxy described by *config*."""
        with self._serialised(config.domain):
            return self._install(config, ctx, overwrite=overwrite, renew_existing=renew_existing)

    def _install(
        self,
        config: ProxyConfig,
        ctx: RunContext,
        *,
        overwrite: bool,
        renew_existing: bool,
    ) -> OperationSummary:
        domain = config.domain
        site = self.sites.site_path(domain)
        if site.exists() and not overwrite:
            ctx.error(f"Configuration for {domain} already exists at {site}.")
            return self._summary(
                "install",
                domain,
                ctx,
                SummaryStatus.FAILED,
                f"Configuration for {domain} already exists; "
                "re-run with --overwrite to replace it.",
                ExitCode.VALIDATION,
            )

        if self.probes_enabled:
            for probe in run_probes(config, timeout=self.probe_timeout):
                if probe.warning is not None:
                    ctx.warn(str(probe.warning))

        degraded: list[str] = []
        backup = self._snapshot(f"pre_install_{domain}", ctx)
        if backup is None:
            degraded.append("no pre-install snapshot")
        tx = Transaction(
            domain=domain,
            backup=backup,
            site_existed=site.exists(),
            link_existed=self.sites.is_enabled(domain),
        )

        acquisition: AcquisitionResult | None = None
        redirect: RedirectResult | None = None
        try:
            self.sites.ensure_directories()
            if tx.site_existed:
                stamp = datetime.now(tz=UTC).strftime("%Y%m%d_%H%M%S")
                copy = self.backups.backup_file(site, f"{OVERWRITE_BACKUP_SUFFIX}.{stamp}")
                tx.overwrite_copy = copy
                tx.record(TransactionStep.OVERWRITE_BACKUP, ctx, copy)
            if self.supervisor.ensure_running(ctx):
                tx.record(TransactionStep.EDGE_STARTED, ctx)

            self.sites.write_site(domain, self.synthesizer.render_http_block(config))
            tx.record(TransactionStep.FILE_WRITTEN, ctx, site)
            self.sites.enable(domain)
            tx.record(TransactionStep.SYMLINK_CREATED, ctx, self.sites.enabled_path(domain))
            self._apply(domain, ctx, tx)

            acquisition = self.acquisition.run(config, ctx, renew_existing=renew_existing)
            if acquisition.degraded:
                degraded.append("TLS not obtained; serving HTTP only")
            elif acquisition.succeeded and acquisition.material is not None:
                material = acquisition.material
                tx.record(TransactionStep.CERTIFICATE_ACQUIRED, ctx, material.certificate)
                if self.mutator.append_https_block(site, config, material):
                    tx.record(TransactionStep.HTTPS_APPENDED, ctx)
                self.edge.validate_syntax()
                if config.force_https:
                    redirect = self.mutator.insert_redirect(site)
                    if redirect.applied:
                        tx.record(TransactionStep.REDIRECT_INSERTED, ctx, redirect.outcome.value)
                    elif redirect.degraded:
                        ctx.warn(redirect.message)
                        degraded.append("HTTPS redirect not configured")
                self._apply(domain, ctx, tx)
        except ApplyError as exc:
            tx.outcome = TransactionOutcome.ABORTED
            ctx.error(str(exc))
            return self._summary(
                "install",
                domain,
                ctx,
                SummaryStatus.FAILED,
                f"nginx is down and needs manual attention: {exc}",
                ExitCode.PROVIDER,
                transaction=tx,
                acquisition=acquisition,
                redirect=redirect,
            )
        except (_Unwind, ProxyctlError, TemplateRenderError, OSError) as exc:
            return self._unwind(
                "install", tx, ctx, exc, acquisition=acquisition, redirect=redirect
            )

        tx.outcome = TransactionOutcome.COMMITTED
        scheme = "HTTPS" if acquisition is not None and acquisition.succeeded else "HTTP"
        if degraded:
            message = (
                f"Reverse proxy for {domain} -> {config.backend} is live over {scheme}, "
                f"with problems: {'; '.join(degraded)}."
            )
            status, code = SummaryStatus.DEGRADED, ExitCode.DEGRADED
        else:
            message = f"Reverse proxy for {domain} -> {config.backend} is live over {scheme}."
            status, code = SummaryStatus.SUCCESS, ExitCode.OK
        return self._summary(
            "install",
            domain,
            ctx,
            status,
            message,
            code,
            transaction=tx,
            acquisition=acquisition,
            redirect=redirect,
        )

    # ------------------------------------------------------------------
    # remove
    def remove(self, domain: str, ctx: RunContext) -> OperationSummary:
        """Disable and delete the site for *domain*, reloading nginx."""
        domain = normalize_domain(domain)
        with self._serialised(domain):
            if not self.sites.site_exists(domain) and not self.sites.is_enabled(domain):
                return self._summary(
                    "remove",
                    domain,
                    ctx,
                    SummaryStatus.FAILED,
                    f"No configuration found for {domain}.",
                    ExitCode.VALIDATION,
                )
            try:
                backup = self.backups.snapshot(f"pre_removal_{domain}")
            except BackupError as exc:
                ctx.error(str(exc))
                return self._summary(
                    "remove",
                    domain,
                    ctx,
                    SummaryStatus.FAILED,
                    f"Refusing to remove {domain} without a backup: {exc}",
                    ExitCode.ENVIRONMENT,
                )
            ctx.step("backup", detail=backup.path)
            tx = Transaction(
                domain=domain,
                backup=backup,
                site_existed=self.sites.site_exists(domain),
                link_existed=self.sites.is_enabled(domain),
            )
            try:
                if self.sites.disable(domain):
                    tx.record(TransactionStep.SYMLINK_REMOVED, ctx)
                if self.sites.site_exists(domain):
                    self.sites.site_path(domain).unlink()
                    tx.record(TransactionStep.FILE_REMOVED, ctx)
                self._apply(domain, ctx, tx)
            except ApplyError as exc:
                tx.outcome = TransactionOutcome.ABORTED
                ctx.error(str(exc))
                return self._summary(
                    "remove",
                    domain,
                    ctx,
                    SummaryStatus.FAILED,
                    f"nginx is down and needs manual attention: {exc}",
                    ExitCode.PROVIDER,
                    transaction=tx,
                )
            except (_Unwind, ProxyctlError, OSError) as exc:
                return self._unwind("remove", tx, ctx, exc)

            tx.outcome = TransactionOutcome.COMMITTED
            return self._summary(
                "remove",
                domain,
                ctx,
                SummaryStatus.SUCCESS,
                f"Removed the reverse proxy for {domain}. Certificates were left in place.",
                ExitCode.OK,
                transaction=tx,
            )

    # ------------------------------------------------------------------
    # renew
    def renew(self, domain: str, ctx: RunContext) -> OperationSummary:
        """Force-renew the certificate for *domain*."""
        domain = normalize_domain(domain)
        with self._serialised(domain):
            result = self.renewal.renew(domain, ctx)
        record = result.record
        if record.status is CertificateStatus.ABSENT:
            return self._summary(
                "renew",
                domain,
                ctx,
                SummaryStatus.FAILED,
                f"No certificate found for {domain}.",
                ExitCode.VALIDATION,
            )
        if not result.renewed:
            return self._summary(
                "renew",
                domain,
                ctx,
                SummaryStatus.FAILED,
                f"Renewal failed for {domain}; the existing certificate is unchanged.",
                ExitCode.PROVIDER,
            )
        expiry = ""
        if record.days_remaining is not None:
            expiry = f" (expires in {record.days_remaining} days)"
        if not result.reloaded:
            return self._summary(
                "renew",
                domain,
                ctx,
                SummaryStatus.DEGRADED,
                f"Certificate for {domain} renewed{expiry} but nginx was not reloaded.",
                ExitCode.DEGRADED,
            )
        return self._summary(
            "renew",
            domain,
            ctx,
            SummaryStatus.SUCCESS,
            f"Certificate for {domain} renewed{expiry}.",
            ExitCode.OK,
        )

    # ------------------------------------------------------------------
    # rollback
    def rollback(self, transaction: Transaction, ctx: RunContext) -> RollbackReport:
        """Return the domain's files and nginx to the pre-transaction state.

        Safe to call repeatedly: after the first run, or for a transaction
        that changed nothing, only the health check is repeated.
        """
        report = RollbackReport(state=RollbackState.RESTORED)
        if transaction.outcome is not TransactionOutcome.ROLLED_BACK and transaction.mutated:
            self._undo_files(transaction, report)
        transaction.outcome = TransactionOutcome.ROLLED_BACK

        try:
            self.edge.validate_syntax()
        except ConfigSyntaxError as exc:
            report.failures["validate"] = str(exc)
        else:
            if not self.supervisor.reload_or_restart():
                report.failures["reload"] = "nginx is not active after reload or restart"

        if report.failures:
            report.state = RollbackState.NEEDS_MANUAL_INTERVENTION
            if transaction.backup is not None:
                report.messages.append(
                    f"Restore manually from {transaction.backup.path} if needed."
                )
        ctx.step(
            "rollback",
            status="success" if report.state is RollbackState.RESTORED else "error",
            detail=report.to_dict(),
        )
        return report

    def _undo_files(self, transaction: Transaction, report: RollbackReport) -> None:
        domain = transaction.domain
        site = self.sites.site_path(domain)
        link = self.sites.enabled_path(domain)

        if link.is_symlink() or link.exists():
            link.unlink()
            report.removed.append(str(link))
        if site.exists():
            site.unlink()
            report.removed.append(str(site))
        backup = transaction.backup
        # Without a snapshot the overwrite copy is the only record of the old site.
        keep = () if backup is not None else (transaction.overwrite_copy,)
        report.removed.extend(
            str(path) for path in self.sites.remove_artifacts(domain, keep=keep)
        )

        if backup is None:
            self._restore_from_overwrite_copy(transaction, report)
            return
        _merge(report, self.backups.restore_primary(backup))
        if transaction.site_existed:
            _merge(report, self._restore_relative(backup, site))
        if transaction.link_existed:
            _merge(report, self._restore_relative(backup, link))

    def _restore_from_overwrite_copy(
        self, transaction: Transaction, report: RollbackReport
    ) -> None:
        site = self.sites.site_path(transaction.domain)
        link = self.sites.enabled_path(transaction.domain)
        copy = transaction.overwrite_copy
        if transaction.site_existed:
            if copy is None or not copy.is_file():
                report.failures[str(site)] = "no snapshot available to restore from"
            else:
                try:
                    copy_into(copy, site)
                except BackupError as exc:
                    report.failures[str(site)] = str(exc)
                else:
                    report.restored.append(str(site))
        if transaction.link_existed:
            if not site.exists():
                report.failures[str(link)] = "no snapshot available to restore from"
                return
            try:
                self.sites.enable(transaction.domain)
            except OSError as exc:
                report.failures[str(link)] = str(exc)
            else:
                report.restored.append(str(link))

    def _restore_relative(self, backup: BackupRef, path: Path) -> RestoreReport:
        try:
            relative = path.relative_to(self.backups.nginx_root)
        except ValueError:
            report = RestoreReport()
            report.failed[str(path)] = f"outside {self.backups.nginx_root}; not in snapshot"
            return report
        return self.backups.restore_path(backup, relative)

    # ------------------------------------------------------------------
    def _apply(self, domain: str, ctx: RunContext, tx: Transaction) -> None:
        result = self.supervisor.apply(domain, ctx)
        if not result.ok:
            raise _Unwind(
                f"nginx only came back after disabling {domain}: {'; '.join(result.problems)}",
                ExitCode.PROVIDER,
            )
        tx.record(TransactionStep.APPLIED, ctx, result.action.value)

    def _snapshot(self, label: str, ctx: RunContext) -> BackupRef | None:
        try:
            ref = self.backups.snapshot(label)
        except BackupError as exc:
            ctx.warn(f"Backup failed ({exc}); continuing without a snapshot.")
            return None
        ctx.step("backup", detail=ref.path)
        return ref

    def _unwind(
        self,
        operation: str,
        tx: Transaction,
        ctx: RunContext,
        exc: BaseException,
        *,
        acquisition: AcquisitionResult | None = None,
        redirect: RedirectResult | None = None,
    ) -> OperationSummary:
        ctx.error(f"{operation} failed: {exc}")
        report = self.rollback(tx, ctx)
        if report.state is RollbackState.RESTORED:
            message = f"{operation.capitalize()} of {tx.domain} failed and was rolled back: {exc}"
        else:
            message = (
                f"{operation.capitalize()} of {tx.domain} failed and rollback was incomplete "
                f"({'; '.join(f'{k}: {v}' for k, v in report.failures.items())}): {exc}"
            )
        return self._summary(
            operation,
            tx.domain,
            ctx,
            SummaryStatus.FAILED,
            message,
            _exit_code_for(exc),
            transaction=tx,
            acquisition=acquisition,
            redirect=redirect,
            rollback=report,
        )

    @contextmanager
    def _serialised(self, domain: str) -> Iterator[None]:
        if self.locks is None:
            yield
            return
        with self.locks.mutate_domain(domain, timeout=self.lock_timeout):
            yield

    @staticmethod
    def _summary(
        operation: str,
        domain: str,
        ctx: RunContext,
        status: SummaryStatus,
        message: str,
        exit_code: ExitCode,
        *,
        transaction: Transaction | None = None,
        acquisition: AcquisitionResult | None = None,
        redirect: RedirectResult | None = None,
        rollback: RollbackReport | None = None,
    ) -> OperationSummary:
        return OperationSummary(
            operation=operation,
            domain=domain,
            status=status,
            message=message,
            exit_code=exit_code,
            warnings=list(ctx.warnings),
            errors=list(ctx.errors),
            transaction=transaction,
            acquisition=acquisition,
            redirect=redirect,
            rollback=rollback,
        )


def _merge(report: RollbackReport, restored: RestoreReport) -> None:
    report.restored.extend(restored.restored)
    report.failures.update(restored.failed)


def _exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, _Unwind):
        return exc.exit_code
    if isinstance(exc, ConfigSyntaxError):
        return ExitCode.VALIDATION
    if isinstance(exc, (OSError, BackupError)):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


__all__ = [
    "OperationSummary",
    "ProvisioningEngine",
    "RollbackReport",
    "RollbackState",
    "SummaryStatus",
    "Transaction",
    "TransactionOutcome",
    "TransactionStep",
]
