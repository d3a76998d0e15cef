"""Brace-depth scanner for generated site files.

This is deliberately not an nginx parser. It relies on the shape that
:mod:`proxyctl.engine.synthesizer` guarantees for everything it writes:

* each ``server {`` opens at depth zero on its own line;
* each directive sits on its own line;
* every ``{`` and ``}`` ends its line (a trailing ``# comment`` is allowed);
* the primary location is written exactly as ``location / {`` and its
  closing brace sits alone on a line.

Files touched by third-party tools (certbot's nginx plugin) keep that shape
closely enough for the scanner: it only adds single-line directives and
``# managed by Certbot`` comments.
"""
from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import ProxyctlError

_SERVER_OPEN = re.compile(r"^server\s*\{$")
_LOCATION_OPEN = re.compile(r"^location\s+(?P<path>.+?)\s*\{$")
_REDIRECT_RE = re.compile(r"^return\s+301\s+https://")

PRIMARY_LOCATION = "/"
REDIRECT_DIRECTIVE = "return 301 https://$host$request_uri;"


class BlockStructureError(ProxyctlError):
    """Raised when a file does not follow the generated shape."""


@dataclass(frozen=True, slots=True)
class LocationSpan:
    """Line range of a ``location`` block; ``end`` is the closing-brace line."""

    path: str
    start: int
    end: int

    def body(self, lines: Sequence[str]) -> list[str]:
        """Return the lines strictly between the braces."""
        return list(lines[self.start + 1 : self.end])


@dataclass(frozen=True, slots=True)
class ServerBlockSpan:
    """Line range and headline directives of a ``server`` block."""

    start: int
    end: int
    listen: tuple[str, ...]
    server_name_line: int | None
    locations: tuple[LocationSpan, ...]

    def listens(self, port: int) -> bool:
        """Return ``True`` when a ``listen`` directive names *port*."""
        for spec in self.listen:
            address = spec.split()[0] if spec.split() else ""
            if address.rsplit(":", 1)[-1].strip("[]") == str(port):
                return True
        return False

    @property
    def is_http_only(self) -> bool:
        """Return ``True`` for blocks serving port 80 and not 443."""
        return self.listens(80) and not self.listens(443)

    @property
    def primary_location(self) -> LocationSpan | None:
        """Return the ``location /`` span, if any."""
        for location in self.locations:
            if location.path == PRIMARY_LOCATION:
                return location
        return None

    def lines(self, lines: Sequence[str]) -> list[str]:
        """Return the block's own lines, braces included."""
        return list(lines[self.start : self.end + 1])


def strip_comment(line: str) -> str:
    """Drop a trailing ``#`` comment that is not inside quotes."""
    quote: str | None = None
    for index, char in enumerate(line):
        if quote:
            if char == quote:
                quote = None
        elif char in {'"', "'"}:
            quote = char
        elif char == "#":
            return line[:index]
    return line


def directive(line: str) -> str:
    """Return the directive text of *line* without comments or padding."""
    return strip_comment(line).strip()


def find_server_blocks(lines: Sequence[str]) -> list[ServerBlockSpan]:
    """Scan *lines* and return every top-level server block in order."""
    blocks: list[ServerBlockSpan] = []
    depth = 0
    start: int | None = None
    listen: list[str] = []
    server_name: int | None = None
    locations: list[LocationSpan] = []
    open_location: tuple[str, int] | None = None

    for index, raw in enumerate(lines):
        code = directive(raw)
        if not code:
            continue
        if depth == 0:
            if _SERVER_OPEN.match(code):
                start, listen, server_name, locations = index, [], None, []
            elif "{" in code or "}" in code:
                raise BlockStructureError(
                    f"Unexpected brace outside a server block (line {index + 1})."
                )
        elif depth == 1 and start is not None:
            if code.startswith("listen "):
                listen.append(code[len("listen ") :].rstrip(";").strip())
            elif code.startswith("server_name "):
                server_name = index
            match = _LOCATION_OPEN.match(code)
            if match:
                open_location = (match.group("path"), index)

        depth += code.count("{") - code.count("}")
        if depth < 0:
            raise BlockStructureError(f"Unbalanced closing brace at line {index + 1}.")

        if open_location is not None and depth == 1 and index != open_location[1]:
            locations.append(LocationSpan(open_location[0], open_location[1], index))
            open_location = None
        if depth == 0 and start is not None:
            if open_location is not None:
                raise BlockStructureError(
                    f"Unterminated location block at line {open_location[1] + 1}."
                )
            blocks.append(
                ServerBlockSpan(
                    start=start,
                    end=index,
                    listen=tuple(listen),
                    server_name_line=server_name,
                    locations=tuple(locations),
                )
            )
            start = None
    if depth != 0:
        raise BlockStructureError("Unbalanced braces: file ends inside a block.")
    return blocks


def has_redirect(lines: Sequence[str], block: ServerBlockSpan) -> bool:
    """Return ``True`` when *block* already redirects to HTTPS."""
    return any(_REDIRECT_RE.match(directive(line)) for line in block.lines(lines))


def has_proxy(lines: Sequence[str], span: ServerBlockSpan | LocationSpan) -> bool:
    """Return ``True`` when *span* contains a ``proxy_pass`` directive."""
    subset = lines[span.start : span.end + 1]
    return any(directive(line).startswith("proxy_pass ") for line in subset)


def contains_directive(lines: Sequence[str], span: LocationSpan, text: str) -> bool:
    """Return ``True`` when the body of *span* holds the directive *text*."""
    wanted = text.strip().rstrip(";")
    return any(directive(line).rstrip(";").strip() == wanted for line in span.body(lines))


def replace_body(lines: Sequence[str], span: LocationSpan, body: Sequence[str]) -> list[str]:
    """Return a copy of *lines* with the body of *span* swapped for *body*."""
    return [*lines[: span.start + 1], *body, *lines[span.end :]]


__all__ = [
    "BlockStructureError",
    "LocationSpan",
    "PRIMARY_LOCATION",
    "REDIRECT_DIRECTIVE",
    "ServerBlockSpan",
    "contains_directive",
    "directive",
    "find_server_blocks",
    "has_proxy",
    "has_redirect",
    "replace_body",
    "strip_comment",
]
