"""Narrow collaborator contracts used by the provisioning engine.

The real implementations live in :mod:`proxyctl.providers`; tests supply
in-memory fakes satisfying the same protocols.
"""
from __future__ import annotations

from typing import Protocol

from ..tls import TLSMaterial


class EdgeServer(Protocol):
    """Control surface of the reverse-proxying server process.

    ``validate_syntax`` raises :class:`~proxyctl.errors.ConfigSyntaxError`;
    the process controls raise :class:`~proxyctl.errors.ProcessError`.
    """

    def validate_syntax(self) -> object:
        """Check the whole configuration tree."""
        ...

    def reload(self) -> object:
        """Gracefully reload the configuration."""
        ...

    def restart(self) -> object:
        """Fully restart the process."""
        ...

    def start(self) -> object:
        """Start the process."""
        ...

    def stop(self) -> object:
        """Stop the process."""
        ...

    def is_active(self) -> bool:
        """Return ``True`` while the process is running."""
        ...


class CertificateAuthority(Protocol):
    """Certificate issuance client; failures raise ``AcquisitionError``."""

    def issue_standalone(self, domain: str, email: str) -> object:
        """Issue while owning port 80 exclusively."""
        ...

    def issue_via_plugin(self, domain: str, email: str) -> object:
        """Issue through the web-server plugin, which edits the live config."""
        ...

    def renew(self, domain: str, *, force: bool = False) -> object:
        """Renew the certificate for *domain*."""
        ...

    def certificate_paths(self, domain: str) -> TLSMaterial | None:
        """Return the live material for *domain*, or ``None``."""
        ...


__all__ = ["CertificateAuthority", "EdgeServer"]
