"""Certificate material, expiry inspection and inventory helpers."""
from __future__ import annotations

import subprocess
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from cryptography import x509

# ``openssl x509 -enddate`` prints e.g. ``notAfter=Jan 15 12:00:00 2025 GMT``.
NOT_AFTER_FORMATS = ("%b %d %H:%M:%S %Y %Z", "%b %d %H:%M:%S %Y")

_AUTHENTICATOR_STRATEGIES = {
    "standalone": "standalone",
    "nginx": "webserver-plugin",
}


class TLSInspectionError(RuntimeError):
    """Raised when certificate metadata cannot be read."""


class CertificateStatus(str, Enum):
    """Lifecycle state of a domain's certificate."""

    ABSENT = "absent"
    ACTIVE = "active"
    EXPIRED = "expired"
    RENEWAL_FAILED = "renewal-failed"


class CertificateStrategy(str, Enum):
    """How a certificate was issued."""

    STANDALONE = "standalone"
    WEBSERVER_PLUGIN = "webserver-plugin"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TLSMaterial:
    """Concrete TLS assets (certificate, private key, optional chain)."""

    certificate: Path
    key: Path
    chain: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "certificate": str(self.certificate),
            "key": str(self.key),
            "chain": str(self.chain) if self.chain is not None else None,
        }


@dataclass(frozen=True)
class CertificateRecord:
    """Certificate state for one domain; expiry is always read from disk."""

    domain: str
    status: CertificateStatus
    issued_strategy: CertificateStrategy = CertificateStrategy.UNKNOWN
    expiry: datetime | None = None
    days_remaining: int | None = None
    material: TLSMaterial | None = None

    def with_status(self, status: CertificateStatus) -> CertificateRecord:
        """Return a copy carrying *status*."""
        return replace(self, status=status)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "status": self.status.value,
            "issued_strategy": self.issued_strategy.value,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "days_remaining": self.days_remaining,
            "paths": self.material.to_dict() if self.material else None,
        }


def parse_not_after(text: str) -> datetime:
    """Parse an ``openssl``-style notAfter timestamp into an aware UTC datetime.

    Both ``Jan 15 12:00:00 2025 GMT`` and the zone-less
    ``Jan 15 12:00:00 2025`` are accepted. Day numbers may be space padded.
    """
    cleaned = text.strip()
    if cleaned.startswith("notAfter="):
        cleaned = cleaned[len("notAfter=") :]
    cleaned = " ".join(cleaned.split())
    for fmt in NOT_AFTER_FORMATS:
        try:
            parsed = datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
        return parsed.replace(tzinfo=UTC)
    raise TLSInspectionError(f"Unrecognised certificate expiry timestamp: {text!r}")


def load_certificate(path: Path) -> x509.Certificate:
    """Load a PEM (or DER) certificate from *path*."""
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def certificate_expiry(path: Path, *, openssl_bin: str = "openssl") -> datetime:
    """Return the notAfter timestamp of the certificate at *path*."""
    try:
        certificate = load_certificate(path)
    except (OSError, ValueError):
        return _openssl_enddate(path, openssl_bin)
    not_after = getattr(certificate, "not_valid_after_utc", None)
    if isinstance(not_after, datetime):
        return not_after
    return _as_utc(certificate.not_valid_after)  # pragma: no cover - older cryptography


def days_until(expiry: datetime, *, now: datetime | None = None) -> int:
    """Return whole days from *now* until *expiry* (negative when past)."""
    current = now or datetime.now(UTC)
    seconds = (expiry - current).total_seconds()
    return int(seconds // 86400)


@dataclass(slots=True)
class CertificateInventory:
    """Enumerate certificate lineages under a Let's Encrypt live directory."""

    live_dir: Path
    warn_expiry_days: int = 30

    @property
    def renewal_dir(self) -> Path:
        """Return certbot's renewal configuration directory."""
        return self.live_dir.parent / "renewal"

    def record(self, domain: str, *, now: datetime | None = None) -> CertificateRecord:
        """Return the :class:`CertificateRecord` for *domain*."""
        live = self.live_dir / domain
        certificate = live / "fullchain.pem"
        strategy = self._issued_strategy(domain)
        if not certificate.is_file():
            return CertificateRecord(
                domain=domain,
                status=CertificateStatus.ABSENT,
                issued_strategy=strategy,
            )
        material = TLSMaterial(
            certificate=certificate,
            key=live / "privkey.pem",
            chain=(live / "chain.pem") if (live / "chain.pem").is_file() else None,
        )
        try:
            expiry = certificate_expiry(certificate)
        except TLSInspectionError:
            return CertificateRecord(
                domain=domain,
                status=CertificateStatus.EXPIRED,
                issued_strategy=strategy,
                days_remaining=0,
                material=material,
            )
        remaining = days_until(expiry, now=now)
        current = now or datetime.now(UTC)
        status = CertificateStatus.EXPIRED if expiry <= current else CertificateStatus.ACTIVE
        return CertificateRecord(
            domain=domain,
            status=status,
            issued_strategy=strategy,
            expiry=expiry,
            days_remaining=remaining,
            material=material,
        )

    def records(self, *, now: datetime | None = None) -> list[CertificateRecord]:
        """Return records for every lineage, most urgent first."""
        if not self.live_dir.is_dir():
            return []
        domains = sorted(
            entry.name
            for entry in self.live_dir.iterdir()
            if entry.is_dir() and entry.name != "README"
        )
        found = [self.record(domain, now=now) for domain in domains]
        present = [item for item in found if item.status is not CertificateStatus.ABSENT]
        return sort_by_urgency(present)

    def is_expiring(self, record: CertificateRecord) -> bool:
        """Return ``True`` when *record* is inside the warning window."""
        if record.days_remaining is None:
            return False
        return record.days_remaining < self.warn_expiry_days

    def _issued_strategy(self, domain: str) -> CertificateStrategy:
        conf = self.renewal_dir / f"{domain}.conf"
        try:
            lines = conf.read_text(encoding="utf-8").splitlines()
        except OSError:
            return CertificateStrategy.UNKNOWN
        for line in lines:
            key, _, value = line.partition("=")
            if key.strip() == "authenticator":
                mapped = _AUTHENTICATOR_STRATEGIES.get(value.strip())
                if mapped is not None:
                    return CertificateStrategy(mapped)
        return CertificateStrategy.UNKNOWN


def sort_by_urgency(records: Iterable[CertificateRecord]) -> list[CertificateRecord]:
    """Order *records* so the soonest-expiring certificate comes first."""

    def _key(record: CertificateRecord) -> tuple[int, str]:
        remaining = record.days_remaining if record.days_remaining is not None else -(10**6)
        return (remaining, record.domain)

    return sorted(records, key=_key)


def _openssl_enddate(path: Path, openssl_bin: str) -> datetime:
    try:
        result = subprocess.run(  # noqa: S603, S607
            [openssl_bin, "x509", "-enddate", "-noout", "-in", str(path)],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise TLSInspectionError(f"{openssl_bin} not found: {exc}") from exc
    if result.returncode != 0 or not result.stdout.strip():
        message = (result.stderr or "no output").strip()
        raise TLSInspectionError(f"Cannot read certificate {path}: {message}")
    return parse_not_after(result.stdout)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "CertificateInventory",
    "CertificateRecord",
    "CertificateStatus",
    "CertificateStrategy",
    "NOT_AFTER_FORMATS",
    "TLSInspectionError",
    "TLSMaterial",
    "certificate_expiry",
    "days_until",
    "load_certificate",
    "parse_not_after",
    "sort_by_urgency",
]
