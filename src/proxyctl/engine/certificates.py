"""Certificate acquisition state machine and renewal workflow.

Acquisition tries the standalone strategy first and falls back to the nginx
plugin. Failure of both demotes the run to HTTP-only: that is reported as a
degraded result, never raised, because the plain proxy keeps working.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..backups import BackupError, BackupStore, copy_into
from ..errors import AcquisitionError, ConfigSyntaxError, ProcessError
from ..models import ProxyConfig
from ..providers.nginx import PRE_PLUGIN_SUFFIX, NginxSites
from ..tls import (
    CertificateInventory,
    CertificateRecord,
    CertificateStatus,
    CertificateStrategy,
    TLSMaterial,
)
from .context import RunContext
from .interfaces import CertificateAuthority, EdgeServer
from .mutator import ConfigMutator, RestoreProxyResult
from .supervisor import OPERATOR_HINTS, ApplyError, ReloadSupervisor

COMMON_FAILURE_CAUSES = (
    "the domain's DNS A record does not point to this server",
    "port 80 is blocked by a firewall or in use by another service",
    "the Let's Encrypt rate limit for this domain was reached",
)


class AcquisitionState(str, Enum):
    """States visited while acquiring a certificate."""

    NOT_REQUESTED = "not-requested"
    REQUESTED = "requested"
    EXISTING = "existing"
    STANDALONE_ATTEMPT = "standalone-attempt"
    STANDALONE_SUCCEEDED = "standalone-succeeded"
    STANDALONE_FAILED = "standalone-failed"
    PLUGIN_ATTEMPT = "plugin-attempt"
    PLUGIN_SUCCEEDED = "plugin-succeeded"
    PLUGIN_FAILED = "plugin-failed"
    RESOLVED_SUCCESS = "resolved-success"
    RESOLVED_DEGRADED = "resolved-degraded"


_WARNING_STATES = frozenset(
    {
        AcquisitionState.STANDALONE_FAILED,
        AcquisitionState.PLUGIN_FAILED,
        AcquisitionState.RESOLVED_DEGRADED,
    }
)


@dataclass(slots=True)
class AcquisitionResult:
    """Terminal outcome of :meth:`CertificateAcquisition.run`."""

    trail: list[AcquisitionState] = field(default_factory=list)
    material: TLSMaterial | None = None
    strategy: CertificateStrategy | None = None
    reused: bool = False
    failures: list[str] = field(default_factory=list)
    pre_plugin_backup: Path | None = None
    restore: RestoreProxyResult | None = None

    @property
    def state(self) -> AcquisitionState:
        """Return the last state reached."""
        return self.trail[-1] if self.trail else AcquisitionState.NOT_REQUESTED

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when usable certificate material is available."""
        return self.state is AcquisitionState.RESOLVED_SUCCESS

    @property
    def degraded(self) -> bool:
        """Return ``True`` when SSL was requested but had to be dropped."""
        return self.state is AcquisitionState.RESOLVED_DEGRADED

    def enter(self, state: AcquisitionState, ctx: RunContext) -> None:
        """Append *state* to the trail and log the transition."""
        self.trail.append(state)
        status = "warning" if state in _WARNING_STATES else "success"
        ctx.step(f"certificate:{state.value}", status=status)


class CertificateAcquisition:
    """Obtain a certificate for one domain, falling back across strategies."""

    def __init__(
        self,
        ca: CertificateAuthority,
        edge: EdgeServer,
        supervisor: ReloadSupervisor,
        mutator: ConfigMutator,
        sites: NginxSites,
        backups: BackupStore,
    ) -> None:
        """Wire the collaborators used by the strategies."""
        self.ca = ca
        self.edge = edge
        self.supervisor = supervisor
        self.mutator = mutator
        self.sites = sites
        self.backups = backups

    def run(
        self, config: ProxyConfig, ctx: RunContext, *, renew_existing: bool = False
    ) -> AcquisitionResult:
        """Drive the state machine for *config* and return where it ended."""
        result = AcquisitionResult()
        if not config.ssl_enabled or not config.ssl_email:
            result.enter(AcquisitionState.NOT_REQUESTED, ctx)
            return result
        result.enter(AcquisitionState.REQUESTED, ctx)

        existing = self.ca.certificate_paths(config.domain)
        if existing is not None:
            return self._reuse(config, ctx, result, existing, renew_existing)

        try:
            self.edge.validate_syntax()
            self.edge.reload()
        except (ConfigSyntaxError, ProcessError) as exc:
            result.failures.append(f"pre-flight: {exc}")
            return self._degrade(config, ctx, result)

        email = config.ssl_email
        if self._standalone(config, email, ctx, result):
            return self._resolve(config, ctx, result, CertificateStrategy.STANDALONE)
        if self._plugin(config, email, ctx, result):
            return self._resolve(config, ctx, result, CertificateStrategy.WEBSERVER_PLUGIN)
        return self._degrade(config, ctx, result)

    # ------------------------------------------------------------------
    def _reuse(
        self,
        config: ProxyConfig,
        ctx: RunContext,
        result: AcquisitionResult,
        material: TLSMaterial,
        renew_existing: bool,
    ) -> AcquisitionResult:
        result.enter(AcquisitionState.EXISTING, ctx)
        result.reused = True
        if renew_existing:
            try:
                self.ca.renew(config.domain, force=True)
            except AcquisitionError as exc:
                ctx.warn(
                    f"Certificate renewal for {config.domain} failed ({exc}); "
                    "keeping the existing certificate."
                )
            else:
                material = self.ca.certificate_paths(config.domain) or material
        result.material = material
        result.enter(AcquisitionState.RESOLVED_SUCCESS, ctx)
        return result

    def _standalone(
        self, config: ProxyConfig, email: str, ctx: RunContext, result: AcquisitionResult
    ) -> bool:
        result.enter(AcquisitionState.STANDALONE_ATTEMPT, ctx)
        try:
            self.edge.stop()
            self.ca.issue_standalone(config.domain, email)
        except (AcquisitionError, ProcessError) as exc:
            result.failures.append(f"standalone: {exc}")
            result.enter(AcquisitionState.STANDALONE_FAILED, ctx)
            return False
        finally:
            self._bring_back(ctx)
        result.enter(AcquisitionState.STANDALONE_SUCCEEDED, ctx)
        return True

    def _bring_back(self, ctx: RunContext) -> None:
        """Start nginx again after the standalone attempt, whatever happened."""
        problems: list[str] = []
        try:
            self.edge.start()
        except ProcessError as exc:
            problems.append(f"start: {exc}")
        self.supervisor.settle()
        if self.edge.is_active():
            return
        ctx.warn("nginx did not come back after the standalone attempt; restarting.")
        try:
            self.edge.restart()
        except ProcessError as exc:
            problems.append(f"restart: {exc}")
        self.supervisor.settle()
        if not self.edge.is_active():
            raise ApplyError(
                "nginx is down after the standalone certificate attempt "
                f"({'; '.join(problems) or 'not active'}). " + " ".join(OPERATOR_HINTS)
            )

    def _plugin(
        self, config: ProxyConfig, email: str, ctx: RunContext, result: AcquisitionResult
    ) -> bool:
        site = self.sites.site_path(config.domain)
        try:
            backup = self.backups.backup_file(site, PRE_PLUGIN_SUFFIX)
        except BackupError as exc:
            # No way back from a plugin edit, so the plugin is not run.
            result.failures.append(f"webserver-plugin: {exc}")
            ctx.step("pre-plugin-backup", status="error", detail=str(exc))
            result.enter(AcquisitionState.PLUGIN_FAILED, ctx)
            return False
        result.pre_plugin_backup = backup
        ctx.step("pre-plugin-backup", detail=backup)

        result.enter(AcquisitionState.PLUGIN_ATTEMPT, ctx)
        try:
            self.ca.issue_via_plugin(config.domain, email)
        except AcquisitionError as exc:
            result.failures.append(f"webserver-plugin: {exc}")
            if site.read_text(encoding="utf-8") != backup.read_text(encoding="utf-8"):
                copy_into(backup, site)
                ctx.step("pre-plugin-restore", status="warning", detail=backup)
            result.enter(AcquisitionState.PLUGIN_FAILED, ctx)
            return False
        result.enter(AcquisitionState.PLUGIN_SUCCEEDED, ctx)
        result.restore = self.mutator.restore_proxy_after_external_mutation(site, config, backup)
        ctx.step("restore-proxy", detail=result.restore.outcome.value)
        return True

    def _resolve(
        self,
        config: ProxyConfig,
        ctx: RunContext,
        result: AcquisitionResult,
        strategy: CertificateStrategy,
    ) -> AcquisitionResult:
        material = self.ca.certificate_paths(config.domain)
        if material is None:
            result.failures.append(
                f"{strategy.value}: issuance reported success but no certificate was found"
            )
            return self._degrade(config, ctx, result)
        result.material = material
        result.strategy = strategy
        result.enter(AcquisitionState.RESOLVED_SUCCESS, ctx)
        return result

    def _degrade(
        self, config: ProxyConfig, ctx: RunContext, result: AcquisitionResult
    ) -> AcquisitionResult:
        causes = "; ".join(COMMON_FAILURE_CAUSES)
        ctx.warn(
            f"SSL certificate could not be obtained for {config.domain}; "
            "continuing with HTTP only. "
            f"Common causes: {causes}. Retry later with: certbot --nginx -d {config.domain}"
        )
        result.enter(AcquisitionState.RESOLVED_DEGRADED, ctx)
        return result


@dataclass(slots=True)
class RenewalResult:
    """Outcome of :meth:`CertificateRenewal.renew`."""

    record: CertificateRecord
    renewed: bool
    reloaded: bool


class CertificateRenewal:
    """List certificates by urgency and force-renew one of them."""

    def __init__(
        self, ca: CertificateAuthority, edge: EdgeServer, inventory: CertificateInventory
    ) -> None:
        """Use *inventory* to read expiry data straight from disk."""
        self.ca = ca
        self.edge = edge
        self._inventory = inventory

    def inventory(self) -> list[CertificateRecord]:
        """Return every certificate, soonest expiry first."""
        return self._inventory.records()

    def renew(self, domain: str, ctx: RunContext) -> RenewalResult:
        """Force-renew *domain*; reload only when the tree still validates."""
        current = self._inventory.record(domain)
        if current.status is CertificateStatus.ABSENT:
            ctx.error(f"No certificate found for {domain}.")
            return RenewalResult(record=current, renewed=False, reloaded=False)
        try:
            self.ca.renew(domain, force=True)
        except AcquisitionError as exc:
            ctx.error(f"Renewal of {domain} failed: {exc}")
            return RenewalResult(
                record=current.with_status(CertificateStatus.RENEWAL_FAILED),
                renewed=False,
                reloaded=False,
            )
        ctx.step("renew", detail=domain)
        record = self._inventory.record(domain)

        try:
            self.edge.validate_syntax()
        except ConfigSyntaxError as exc:
            ctx.warn(f"Configuration check failed after renewal; nginx was not reloaded: {exc}")
            return RenewalResult(record=record, renewed=True, reloaded=False)
        try:
            self.edge.reload()
        except ProcessError as exc:
            ctx.warn(f"nginx reload after renewal failed: {exc}")
            return RenewalResult(record=record, renewed=True, reloaded=False)
        ctx.step("reload")
        return RenewalResult(record=record, renewed=True, reloaded=True)


__all__ = [
    "AcquisitionResult",
    "AcquisitionState",
    "COMMON_FAILURE_CAUSES",
    "CertificateAcquisition",
    "CertificateRenewal",
    "RenewalResult",
]
