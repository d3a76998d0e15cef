"""Unit tests for certificate inspection helpers."""
from __future__ import annotations

import subprocess
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from proxyctl.tls import (
    CertificateInventory,
    CertificateRecord,
    CertificateStatus,
    CertificateStrategy,
    TLSInspectionError,
    certificate_expiry,
    days_until,
    parse_not_after,
    sort_by_urgency,
)


class DummyResult:
    """Stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.mark.parametrize(
    "text",
    [
        "notAfter=Jan 15 12:00:00 2025 GMT",
        "Jan 15 12:00:00 2025 GMT\n",
        "Jan 15 12:00:00 2025",
        "notAfter=Jan  15 12:00:00 2025 GMT",
    ],
)
def test_parse_not_after_forms(text: str) -> None:
    """openssl-style timestamps parse into aware UTC datetimes."""
    assert parse_not_after(text) == datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


def test_parse_not_after_rejects_garbage() -> None:
    """Unknown formats raise instead of guessing."""
    with pytest.raises(TLSInspectionError):
        parse_not_after("2025-01-15T12:00:00Z")


def test_days_until_floors() -> None:
    """Partial days round down, past dates are negative."""
    now = datetime(2025, 1, 1, tzinfo=UTC)

    assert days_until(now + timedelta(days=10, hours=23), now=now) == 10
    assert days_until(now - timedelta(hours=1), now=now) == -1


def test_certificate_expiry_reads_pem(
    tmp_path: Path, make_certificate: Callable[..., Path]
) -> None:
    """The notAfter date comes straight from the certificate file."""
    path = make_certificate(tmp_path, "example.com", days=45)

    remaining = days_until(certificate_expiry(path))

    assert remaining == 44


def test_certificate_expiry_falls_back_to_openssl(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Files cryptography cannot parse are handed to ``openssl x509``."""
    path = tmp_path / "odd.pem"
    path.write_text("not a certificate", encoding="utf-8")
    calls: list[list[str]] = []

    def fake_run(args: list[str], **kwargs: object) -> DummyResult:
        calls.append(list(args))
        return DummyResult(stdout="notAfter=Mar  1 00:00:00 2030 GMT\n")

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert certificate_expiry(path) == datetime(2030, 3, 1, tzinfo=UTC)
    assert calls == [["openssl", "x509", "-enddate", "-noout", "-in", str(path)]]


def test_inventory_record_states(
    live_dir: Path, make_certificate: Callable[..., Path]
) -> None:
    """Records report absent, active and expired lineages."""
    make_certificate(live_dir, "ok.example.com", days=60)
    make_certificate(live_dir, "old.example.com", days=-3)
    inventory = CertificateInventory(live_dir, warn_expiry_days=30)

    absent = inventory.record("missing.example.com")
    active = inventory.record("ok.example.com")
    expired = inventory.record("old.example.com")

    assert absent.status is CertificateStatus.ABSENT
    assert absent.material is None
    assert active.status is CertificateStatus.ACTIVE
    assert active.material is not None and active.material.chain is not None
    assert not inventory.is_expiring(active)
    assert expired.status is CertificateStatus.EXPIRED
    assert inventory.is_expiring(expired)
    assert expired.to_dict()["status"] == "expired"


def test_inventory_reads_issue_strategy(
    live_dir: Path, make_certificate: Callable[..., Path]
) -> None:
    """The renewal config reveals which authenticator issued a lineage."""
    make_certificate(live_dir, "a.example.com")
    make_certificate(live_dir, "b.example.com")
    renewal = live_dir.parent / "renewal"
    renewal.mkdir()
    (renewal / "a.example.com.conf").write_text(
        "[renewalparams]\nauthenticator = standalone\n", encoding="utf-8"
    )
    (renewal / "b.example.com.conf").write_text(
        "[renewalparams]\nauthenticator = nginx\ninstaller = nginx\n", encoding="utf-8"
    )
    inventory = CertificateInventory(live_dir)

    assert inventory.record("a.example.com").issued_strategy is CertificateStrategy.STANDALONE
    assert (
        inventory.record("b.example.com").issued_strategy is CertificateStrategy.WEBSERVER_PLUGIN
    )


def test_records_skip_readme_and_sort(
    live_dir: Path, make_certificate: Callable[..., Path]
) -> None:
    """``README`` and empty lineages are ignored; urgency decides order."""
    make_certificate(live_dir, "b.example.com", days=20)
    make_certificate(live_dir, "a.example.com", days=20)
    make_certificate(live_dir, "c.example.com", days=2)
    (live_dir / "README").mkdir()
    (live_dir / "empty.example.com").mkdir()

    domains = [record.domain for record in CertificateInventory(live_dir).records()]

    assert domains == ["c.example.com", "a.example.com", "b.example.com"]


def test_sort_by_urgency_puts_unknown_expiry_first() -> None:
    """Records without a readable expiry are treated as most urgent."""
    records = [
        CertificateRecord("z.example.com", CertificateStatus.ACTIVE, days_remaining=5),
        CertificateRecord("y.example.com", CertificateStatus.EXPIRED),
    ]

    assert [record.domain for record in sort_by_urgency(records)] == [
        "y.example.com",
        "z.example.com",
    ]
