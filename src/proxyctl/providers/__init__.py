"""Provider interfaces for proxyctl."""
from __future__ import annotations

from .certbot import CertbotError, CertbotProvider
from .nginx import NginxError, NginxProvider, NginxSites
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "CertbotError",
    "CertbotProvider",
    "NginxError",
    "NginxProvider",
    "NginxSites",
    "SystemdError",
    "SystemdProvider",
]
