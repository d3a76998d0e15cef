"""Validated input records for reverse-proxy provisioning."""
from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from .errors import ValidationError

_DOMAIN_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*\.[a-zA-Z]{2,}$"
)
_IPV4_RE = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")
_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")

MIN_PORT = 1
MAX_PORT = 65535


def normalize_domain(value: str) -> str:
    """Lowercase *value*, trim whitespace and strip a leading ``www.``."""
    domain = value.strip().lower().rstrip(".")
    if domain.startswith("www."):
        domain = domain[len("www.") :]
    return domain


def is_valid_domain(value: str) -> bool:
    """Return ``True`` when *value* is a syntactically valid hostname."""
    return bool(_DOMAIN_RE.match(value))


def is_valid_ipv4(value: str) -> bool:
    """Return ``True`` for dotted-quad IPv4 literals with octets <= 255."""
    if not _IPV4_RE.match(value):
        return False
    return all(int(octet) <= 255 for octet in value.split("."))


def is_valid_backend_host(value: str) -> bool:
    """Accept IPv4 literals, ``localhost`` or hostnames."""
    return value == "localhost" or is_valid_ipv4(value) or is_valid_domain(value)


def is_valid_email(value: str) -> bool:
    """Return ``True`` for RFC-shaped addresses."""
    return bool(_EMAIL_RE.match(value))


def validate_port(value: object) -> int:
    """Coerce *value* to a TCP port in ``1..65535`` or raise :class:`ValidationError`."""
    if isinstance(value, bool):
        raise ValidationError("Port must be a valid number between 1 and 65535.")
    if isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            raise ValidationError("Port must be a valid number between 1 and 65535.")
        value = int(text)
    if not isinstance(value, int) or not MIN_PORT <= value <= MAX_PORT:
        raise ValidationError("Port must be a valid number between 1 and 65535.")
    return value


def parse_backend_address(value: str, port: object | None = None) -> tuple[str, int]:
    """Split ``host[:port]`` or a URL into a validated ``(host, port)`` pair.

    An explicit *port* wins over a port embedded in *value*.
    """
    text = value.strip()
    if not text:
        raise ValidationError("Backend address is required.")
    if "://" not in text:
        text = f"//{text}"
    try:
        parts = urlsplit(text)
        embedded_port = parts.port
    except ValueError as exc:
        raise ValidationError(f"Invalid backend address: {value!r}.") from exc
    host = (parts.hostname or "").lower()
    if not is_valid_backend_host(host):
        raise ValidationError(f"Invalid backend address: {value!r}.")
    chosen = port if port is not None else embedded_port
    if chosen is None:
        raise ValidationError("Backend port is required.")
    return host, validate_port(chosen)


@dataclass(frozen=True, slots=True)
class ProxyConfig:
    """One reverse-proxy definition, keyed by its normalised domain."""

    domain: str
    backend_host: str
    backend_port: int
    ssl_enabled: bool = False
    ssl_email: str | None = None
    force_https: bool = False

    @classmethod
    def create(
        cls,
        *,
        domain: str,
        backend_host: str,
        backend_port: object,
        ssl_enabled: bool = False,
        ssl_email: str | None = None,
        force_https: bool = False,
    ) -> ProxyConfig:
        """Normalise and validate raw operator input."""
        if not domain or not domain.strip():
            raise ValidationError("Domain name is required.")
        normalized = normalize_domain(domain)
        if not is_valid_domain(normalized):
            raise ValidationError(f"Invalid domain name format: {domain!r}.")

        host = backend_host.strip().lower()
        if not host:
            raise ValidationError("Backend address is required.")
        if not is_valid_backend_host(host):
            raise ValidationError(f"Invalid backend address: {backend_host!r}.")
        port = validate_port(backend_port)

        email: str | None = None
        if ssl_enabled:
            email = (ssl_email or "").strip()
            if not email:
                raise ValidationError(
                    "Email address is required for SSL certificate registration."
                )
            if not is_valid_email(email):
                raise ValidationError(f"Invalid email address: {ssl_email!r}.")

        return cls(
            domain=normalized,
            backend_host=host,
            backend_port=port,
            ssl_enabled=bool(ssl_enabled),
            ssl_email=email,
            force_https=bool(force_https) and bool(ssl_enabled),
        )

    @property
    def backend(self) -> str:
        """Return ``host:port`` for the backend."""
        return f"{self.backend_host}:{self.backend_port}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "backend_host": self.backend_host,
            "backend_port": self.backend_port,
            "ssl_enabled": self.ssl_enabled,
            "ssl_email": self.ssl_email,
            "force_https": self.force_https,
        }


__all__ = [
    "MAX_PORT",
    "MIN_PORT",
    "ProxyConfig",
    "is_valid_backend_host",
    "is_valid_domain",
    "is_valid_email",
    "is_valid_ipv4",
    "normalize_domain",
    "parse_backend_address",
    "validate_port",
]
