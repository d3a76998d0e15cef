"""Structure-aware rewrites of generated site files.

Every rewrite follows the same commit discipline: the candidate text is
written to ``<file>.tmp``, atomically swapped in, and the whole nginx tree is
validated (nginx cannot check a single file because directives are shared).
If validation fails the previous content is swapped back atomically. The
temporary file never survives a call.
"""
from __future__ import annotations

import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..backups import copy_into
from ..errors import ConfigSyntaxError
from ..models import ProxyConfig
from ..providers.nginx import TEMP_SUFFIX
from ..templates import write_atomic
from ..tls import TLSMaterial
from .blocks import (
    REDIRECT_DIRECTIVE,
    BlockStructureError,
    LocationSpan,
    ServerBlockSpan,
    contains_directive,
    find_server_blocks,
    has_proxy,
    has_redirect,
    replace_body,
)
from .interfaces import EdgeServer
from .synthesizer import ConfigSynthesizer, join_blocks

_LOCATION_INDENT = " " * 8
_SERVER_INDENT = " " * 4


class RedirectOutcome(str, Enum):
    """Result of :meth:`ConfigMutator.insert_redirect`."""

    REPLACED = "replaced"
    INSERTED_AFTER_SERVER_NAME = "inserted-after-server-name"
    ALREADY_PRESENT = "already-present"
    FAILED = "failed"


class RestoreOutcome(str, Enum):
    """Result of :meth:`ConfigMutator.restore_proxy_after_external_mutation`."""

    NOT_NEEDED = "not-needed"
    RESTORED = "restored"
    REVERTED_TO_BACKUP = "reverted-to-backup"


@dataclass(frozen=True, slots=True)
class RedirectResult:
    """Outcome of a redirect insertion; ``FAILED`` is degraded, not fatal."""

    outcome: RedirectOutcome
    message: str
    attempts: tuple[str, ...] = ()

    @property
    def applied(self) -> bool:
        """Return ``True`` when the file was changed."""
        return self.outcome in {
            RedirectOutcome.REPLACED,
            RedirectOutcome.INSERTED_AFTER_SERVER_NAME,
        }

    @property
    def degraded(self) -> bool:
        """Return ``True`` when no redirect could be put in place."""
        return self.outcome is RedirectOutcome.FAILED


@dataclass(frozen=True, slots=True)
class RestoreProxyResult:
    """Outcome of repairing the primary location after a plugin run."""

    outcome: RestoreOutcome
    message: str
    locations: int = 0


@dataclass(slots=True)
class _Layout:
    http: ServerBlockSpan | None
    https: list[ServerBlockSpan] = field(default_factory=list)
    count: int = 0


class ConfigMutator:
    """Rewrite the primary location of generated files in place."""

    def __init__(
        self,
        edge: EdgeServer,
        synthesizer: ConfigSynthesizer,
        *,
        sentinel: str = "root /var/www/html",
    ) -> None:
        """Use *edge* for validation and *synthesizer* for canonical stanzas."""
        self.edge = edge
        self.synthesizer = synthesizer
        self.sentinel = sentinel

    # ------------------------------------------------------------------
    # redirect
    def insert_redirect(self, path: Path) -> RedirectResult:
        """Make the HTTP block of *path* redirect to HTTPS.

        The first strategy replaces the body of the HTTP block's
        ``location /`` with a 301 stanza. If the candidate does not verify
        (structurally or under ``nginx -t``), the redirect is instead placed
        directly after ``server_name``. When both fail the live file is left
        untouched and a ``FAILED`` result is returned.
        """
        original = path.read_text(encoding="utf-8")
        lines = original.splitlines()
        try:
            layout = _layout(lines)
        except BlockStructureError as exc:
            return RedirectResult(RedirectOutcome.FAILED, f"Cannot scan {path.name}: {exc}")
        if layout.http is None:
            return RedirectResult(
                RedirectOutcome.FAILED, f"No HTTP-only server block found in {path.name}."
            )
        if has_redirect(lines, layout.http):
            return RedirectResult(
                RedirectOutcome.ALREADY_PRESENT, "HTTP block already redirects to HTTPS."
            )
        if not layout.https:
            return RedirectResult(
                RedirectOutcome.FAILED,
                f"No HTTPS server block in {path.name}; refusing to redirect HTTP traffic.",
            )

        attempts: list[str] = []
        strategies = (
            (RedirectOutcome.REPLACED, _replace_location_with_redirect, True),
            (RedirectOutcome.INSERTED_AFTER_SERVER_NAME, _insert_after_server_name, False),
        )
        for outcome, build, strict in strategies:
            try:
                candidate = build(lines, layout.http)
            except BlockStructureError as exc:
                attempts.append(f"{outcome.value}: {exc}")
                continue
            problem = _verify_redirect(candidate, layout.count, strict=strict)
            if problem:
                attempts.append(f"{outcome.value}: {problem}")
                continue
            text = _join(candidate, original)
            try:
                self._commit(path, original, text)
            except ConfigSyntaxError as exc:
                attempts.append(f"{outcome.value}: rejected by syntax check: {exc}")
                continue
            problem = _verify_redirect(
                path.read_text(encoding="utf-8").splitlines(), layout.count, strict=strict
            )
            if problem:
                write_atomic(path, original)
                attempts.append(f"{outcome.value}: post-apply check failed: {problem}")
                continue
            return RedirectResult(outcome, "HTTP to HTTPS redirect enabled.", tuple(attempts))

        return RedirectResult(
            RedirectOutcome.FAILED,
            "Could not add the HTTPS redirect automatically; add "
            f"'{REDIRECT_DIRECTIVE}' to the port 80 server block manually.",
            tuple(attempts),
        )

    # ------------------------------------------------------------------
    # https
    def append_https_block(self, path: Path, config: ProxyConfig, material: TLSMaterial) -> bool:
        """Append the HTTPS block unless the file already serves port 443."""
        text = path.read_text(encoding="utf-8")
        try:
            blocks = find_server_blocks(text.splitlines())
        except BlockStructureError:
            blocks = []
        if any(block.listens(443) for block in blocks) or "listen 443" in text:
            return False
        write_atomic(path, join_blocks(text, self.synthesizer.render_https_block(config, material)))
        return True

    # ------------------------------------------------------------------
    # plugin repair
    def restore_proxy_after_external_mutation(
        self,
        path: Path,
        config: ProxyConfig,
        backup: Path,
    ) -> RestoreProxyResult:
        """Put the proxy stanza back where a plugin left a static-root placeholder.

        Every ``location /`` whose body contains the sentinel directive is
        rewritten. If the repaired file fails validation, the file-level
        *backup* taken before the plugin ran is copied back instead.
        """
        original = path.read_text(encoding="utf-8")
        lines = original.splitlines()
        try:
            blocks = find_server_blocks(lines)
        except BlockStructureError as exc:
            return self._revert(path, backup, f"Cannot scan {path.name}: {exc}")

        targets: list[LocationSpan] = []
        for block in blocks:
            location = block.primary_location
            if location is not None and contains_directive(lines, location, self.sentinel):
                targets.append(location)
        if not targets:
            return RestoreProxyResult(RestoreOutcome.NOT_NEEDED, "Proxy configuration intact.")

        stanza = self.synthesizer.render_proxy_stanza(config).splitlines()
        candidate = list(lines)
        # Bottom-up so earlier spans keep their line numbers.
        for location in sorted(targets, key=lambda span: span.start, reverse=True):
            candidate = replace_body(candidate, location, stanza)
        try:
            self._commit(path, original, _join(candidate, original))
        except ConfigSyntaxError as exc:
            return self._revert(path, backup, f"Repaired config rejected: {exc}")
        return RestoreProxyResult(
            RestoreOutcome.RESTORED,
            f"Proxy to {config.backend} restored after certificate installation.",
            len(targets),
        )

    # ------------------------------------------------------------------
    def _commit(self, path: Path, original: str, candidate: str) -> None:
        staging = path.with_name(f"{path.name}{TEMP_SUFFIX}")
        try:
            staging.write_text(candidate, encoding="utf-8")
            os.chmod(staging, 0o644)
            os.replace(staging, path)
            try:
                self.edge.validate_syntax()
            except ConfigSyntaxError:
                write_atomic(path, original)
                raise
        finally:
            staging.unlink(missing_ok=True)

    def _revert(self, path: Path, backup: Path, reason: str) -> RestoreProxyResult:
        copy_into(backup, path)
        return RestoreProxyResult(
            RestoreOutcome.REVERTED_TO_BACKUP,
            f"{reason}; restored {path.name} from {backup.name}.",
        )


def _layout(lines: Sequence[str]) -> _Layout:
    blocks = find_server_blocks(lines)
    http = next((block for block in blocks if block.is_http_only), None)
    https = [block for block in blocks if block.listens(443)]
    return _Layout(http=http, https=https, count=len(blocks))


def _replace_location_with_redirect(lines: Sequence[str], http: ServerBlockSpan) -> list[str]:
    location = http.primary_location
    if location is None:
        raise BlockStructureError("HTTP block has no 'location /'.")
    body = [
        f"{_LOCATION_INDENT}# Redirect HTTP to HTTPS",
        f"{_LOCATION_INDENT}{REDIRECT_DIRECTIVE}",
    ]
    return replace_body(lines, location, body)


def _insert_after_server_name(lines: Sequence[str], http: ServerBlockSpan) -> list[str]:
    anchor = http.server_name_line
    if anchor is None:
        raise BlockStructureError("HTTP block has no server_name line.")
    return [
        *lines[: anchor + 1],
        "",
        f"{_SERVER_INDENT}# Redirect HTTP to HTTPS",
        f"{_SERVER_INDENT}{REDIRECT_DIRECTIVE}",
        *lines[anchor + 1 :],
    ]


def _verify_redirect(lines: Sequence[str], expected_blocks: int, *, strict: bool) -> str | None:
    """Return a description of what is wrong with *lines*, or ``None``."""
    try:
        layout = _layout(lines)
    except BlockStructureError as exc:
        return str(exc)
    if layout.count != expected_blocks:
        return f"expected {expected_blocks} server blocks, found {layout.count}"
    if layout.http is None or not has_redirect(lines, layout.http):
        return "HTTP block carries no redirect"
    if strict and has_proxy(lines, layout.http):
        return "HTTP block still proxies to the backend"
    for block in layout.https:
        if not has_proxy(lines, block):
            return "HTTPS block lost its proxy stanza"
        if has_redirect(lines, block):
            return "HTTPS block redirects to itself"
    return None


def _join(lines: Sequence[str], original: str) -> str:
    text = "\n".join(lines)
    return f"{text}\n" if original.endswith("\n") else text


__all__ = [
    "ConfigMutator",
    "RedirectOutcome",
    "RedirectResult",
    "RestoreOutcome",
    "RestoreProxyResult",
]
