"""Error taxonomy shared by the provisioning engine.

The classes map onto how a failure propagates through a transaction:

* :class:`ValidationError` rejects input before anything is mutated.
* :class:`ResourceError` covers backup/restore I/O.
* :class:`ConfigSyntaxError` means ``nginx -t`` refused the candidate config;
  it always unwinds the transaction.
* :class:`ProcessError` is raised by reload/restart once escalation has been
  exhausted.
* :class:`AcquisitionError` is a failed certificate strategy; it demotes the
  run to HTTP-only and never unwinds.
* :class:`ConnectivityWarning` is advisory and is only ever recorded.
"""
from __future__ import annotations


class ProxyctlError(RuntimeError):
    """Base class for errors raised by proxyctl."""


class ValidationError(ProxyctlError, ValueError):
    """Raised when operator input fails validation."""


class ResourceError(ProxyctlError):
    """Raised when filesystem resources cannot be captured or restored."""


class ConfigSyntaxError(ProxyctlError):
    """Raised when the edge server rejects the configuration tree."""

    def __init__(self, message: str, *, details: str = "") -> None:
        """Record the validator output alongside the message."""
        super().__init__(message)
        self.details = details


class ProcessError(ProxyctlError):
    """Raised when the edge server process cannot be controlled."""


class AcquisitionError(ProxyctlError):
    """Raised when a certificate issuance strategy fails."""


class ConnectivityWarning(UserWarning):
    """Advisory warning produced by DNS/backend probes."""


__all__ = [
    "AcquisitionError",
    "ConfigSyntaxError",
    "ConnectivityWarning",
    "ProcessError",
    "ProxyctlError",
    "ResourceError",
    "ValidationError",
]
