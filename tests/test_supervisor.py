"""Tests for the reload supervisor's escalation ladder."""
from __future__ import annotations

import pytest

from proxyctl.engine import ApplyAction, ApplyError, ReloadSupervisor, RunContext
from proxyctl.errors import ConfigSyntaxError, ProcessError
from proxyctl.providers.nginx import NginxSites

from conftest import FakeEdgeServer


@pytest.fixture
def supervisor(edge: FakeEdgeServer, sites: NginxSites) -> ReloadSupervisor:
    """Return a supervisor that never sleeps."""
    return ReloadSupervisor(edge, sites, settle_seconds=0)


def _enable(sites: NginxSites, domain: str) -> None:
    sites.write_site(domain, "server {\n    listen 80;\n}\n")
    sites.enable(domain)


def test_apply_reloads_when_healthy(
    edge: FakeEdgeServer, supervisor: ReloadSupervisor, run: RunContext
) -> None:
    """The common path validates then reloads."""
    result = supervisor.apply("example.com", run)

    assert result.action is ApplyAction.RELOADED
    assert result.ok
    assert edge.calls == ["validate", "reload"]
    assert run.warnings == []


def test_apply_refuses_invalid_tree(
    edge: FakeEdgeServer, supervisor: ReloadSupervisor, run: RunContext
) -> None:
    """A failed syntax check never touches the running process."""
    edge.validate_failures = 1

    with pytest.raises(ConfigSyntaxError):
        supervisor.apply("example.com", run)

    assert edge.calls == ["validate"]
    assert run.steps == [("validate", "error")]


def test_apply_restarts_when_reload_leaves_nginx_down(
    edge: FakeEdgeServer, supervisor: ReloadSupervisor, run: RunContext
) -> None:
    """Reload that leaves the service inactive escalates to restart."""
    edge.down_after = {"reload"}

    result = supervisor.apply("example.com", run)

    assert result.action is ApplyAction.RESTARTED
    assert edge.calls == ["validate", "reload", "restart"]
    assert "attempting a full restart" in run.warnings[0]
    assert result.problems == ["reload: nginx not active afterwards"]


def test_apply_emergency_disables_site(
    edge: FakeEdgeServer,
    sites: NginxSites,
    supervisor: ReloadSupervisor,
    run: RunContext,
) -> None:
    """When restart fails the site is disabled and nginx restarted without it."""
    _enable(sites, "example.com")
    edge.failures = {"reload": 1, "restart": 1}

    result = supervisor.apply("example.com", run)

    assert result.action is ApplyAction.EMERGENCY_REVERTED
    assert not result.ok
    assert not sites.is_enabled("example.com")
    assert sites.site_exists("example.com")
    assert edge.calls == ["validate", "reload", "restart", "restart"]


def test_apply_raises_when_nginx_stays_down(
    edge: FakeEdgeServer,
    sites: NginxSites,
    supervisor: ReloadSupervisor,
    run: RunContext,
) -> None:
    """Exhausting the ladder raises with operator guidance."""
    _enable(sites, "example.com")
    edge.failures = {"reload": 1, "restart": 2}

    with pytest.raises(ApplyError, match="systemctl status nginx"):
        supervisor.apply("example.com", run)

    assert not sites.is_enabled("example.com")


def test_ensure_running_starts_stopped_nginx(
    edge: FakeEdgeServer, supervisor: ReloadSupervisor, run: RunContext
) -> None:
    """A stopped service is started before the install begins."""
    assert supervisor.ensure_running(run) is False

    edge.active = False
    assert supervisor.ensure_running(run) is True
    assert edge.calls == ["start"]


def test_ensure_running_raises_when_start_does_not_stick(
    edge: FakeEdgeServer, supervisor: ReloadSupervisor, run: RunContext
) -> None:
    """If nginx will not come up the install cannot proceed."""
    edge.active = False
    edge.down_after = {"start"}

    with pytest.raises(ProcessError, match="did not become active"):
        supervisor.ensure_running(run)


def test_reload_or_restart(edge: FakeEdgeServer, supervisor: ReloadSupervisor) -> None:
    """Reload falls back to restart; both failing returns False."""
    edge.failures = {"reload": 1}
    assert supervisor.reload_or_restart() is True
    assert edge.calls == ["reload", "restart"]

    edge.failures = {"reload": 1, "restart": 1}
    assert supervisor.reload_or_restart() is False
