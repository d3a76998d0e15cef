"""Render nginx server blocks for a :class:`~proxyctl.models.ProxyConfig`."""
from __future__ import annotations

from dataclasses import dataclass, field

from ..models import ProxyConfig
from ..templates import TemplateEngine
from ..tls import TLSMaterial

HTTP_TEMPLATE = "nginx/http_block.conf.j2"
HTTPS_TEMPLATE = "nginx/https_block.conf.j2"
PROXY_STANZA_TEMPLATE = "nginx/_proxy_stanza.conf.j2"

TLS_CIPHERS = ":".join(
    (
        "ECDHE-ECDSA-AES128-GCM-SHA256",
        "ECDHE-RSA-AES128-GCM-SHA256",
        "ECDHE-ECDSA-AES256-GCM-SHA384",
        "ECDHE-RSA-AES256-GCM-SHA384",
        "ECDHE-ECDSA-CHACHA20-POLY1305",
        "ECDHE-RSA-CHACHA20-POLY1305",
        "DHE-RSA-AES128-GCM-SHA256",
        "DHE-RSA-AES256-GCM-SHA384",
    )
)


@dataclass(slots=True)
class ConfigSynthesizer:
    """Produce byte-stable configuration text from templates.

    Output never contains timestamps or other run-dependent values, so the
    same input always renders identically.
    """

    templates: TemplateEngine = field(default_factory=lambda: TemplateEngine.with_overrides(None))

    def render_http_block(self, config: ProxyConfig) -> str:
        """Return the port-80 server block, including its header comments."""
        return self.templates.render_to_string(HTTP_TEMPLATE, self._context(config))

    def render_https_block(self, config: ProxyConfig, material: TLSMaterial) -> str:
        """Return the port-443 server block using *material*."""
        context = self._context(config)
        context.update(
            certificate=str(material.certificate),
            certificate_key=str(material.key),
            ciphers=TLS_CIPHERS,
        )
        return self.templates.render_to_string(HTTPS_TEMPLATE, context)

    def render_proxy_stanza(self, config: ProxyConfig) -> str:
        """Return the body of the primary ``location /`` block."""
        return self.templates.render_to_string(PROXY_STANZA_TEMPLATE, self._context(config))

    def render_site(self, config: ProxyConfig, material: TLSMaterial | None = None) -> str:
        """Return a full site file: HTTP block plus HTTPS block when *material* is given."""
        text = self.render_http_block(config)
        if material is None:
            return text
        return join_blocks(text, self.render_https_block(config, material))

    @staticmethod
    def _context(config: ProxyConfig) -> dict[str, object]:
        return {
            "domain": config.domain,
            "backend_host": config.backend_host,
            "backend_port": config.backend_port,
        }


def join_blocks(existing: str, block: str) -> str:
    """Append *block* after *existing*, separated by one blank line."""
    return existing.rstrip("\n") + "\n\n" + block


__all__ = [
    "ConfigSynthesizer",
    "HTTPS_TEMPLATE",
    "HTTP_TEMPLATE",
    "PROXY_STANZA_TEMPLATE",
    "TLS_CIPHERS",
    "join_blocks",
]
