"""Tests for the brace-depth server block scanner."""
from __future__ import annotations

import pytest

from proxyctl.engine.blocks import (
    BlockStructureError,
    contains_directive,
    directive,
    find_server_blocks,
    has_proxy,
    has_redirect,
    replace_body,
    strip_comment,
)

CERTBOT_EDITED = """# Reverse proxy configuration for example.com
server {
    listen 80;
    server_name example.com;

    listen 443 ssl; # managed by Certbot
    ssl_certificate /etc/letsencrypt/live/example.com/fullchain.pem; # managed by Certbot

    location / {
        root /var/www/html;
        index index.html;
    }

    location ~* /\\.(env|git) {
        deny all;
        return 404;
    }
}

server {
    if ($host = example.com) {
        return 301 https://$host$request_uri;
    } # managed by Certbot

    listen 80;
    server_name example.com;
    return 404; # managed by Certbot
}
"""


def test_strip_comment_respects_quotes() -> None:
    """A ``#`` inside quotes is not a comment."""
    assert strip_comment('add_header X "a#b"; # note') == 'add_header X "a#b"; '
    assert directive("    listen 80; # managed by Certbot") == "listen 80;"
    assert directive("# only a comment") == ""


def test_scanner_handles_certbot_edits() -> None:
    """Comments, ``if`` blocks and extra listens keep their block boundaries."""
    lines = CERTBOT_EDITED.splitlines()
    blocks = find_server_blocks(lines)

    assert len(blocks) == 2
    first, second = blocks
    assert first.listen == ("80", "443 ssl")
    assert not first.is_http_only
    assert first.server_name_line == 3
    primary = first.primary_location
    assert primary is not None
    assert primary.body(lines) == ["        root /var/www/html;", "        index index.html;"]
    assert contains_directive(lines, primary, "root /var/www/html")
    assert not has_proxy(lines, primary)
    assert [location.path for location in first.locations] == ["/", "~* /\\.(env|git)"]

    assert second.is_http_only
    assert second.locations == ()
    assert has_redirect(lines, second)
    assert not has_redirect(lines, first)


def test_listens_matches_address_forms() -> None:
    """``listen`` may carry an address and extra parameters."""
    lines = ["server {", "    listen [::]:443 ssl http2;", "    listen 0.0.0.0:80;", "}"]
    (block,) = find_server_blocks(lines)

    assert block.listens(443)
    assert block.listens(80)
    assert not block.listens(8080)


def test_replace_body_keeps_braces() -> None:
    """Only the lines between the braces are swapped."""
    lines = ["server {", "    listen 80;", "    location / {", "        old;", "    }", "}"]
    (block,) = find_server_blocks(lines)
    primary = block.primary_location
    assert primary is not None

    result = replace_body(lines, primary, ["        new_one;", "        new_two;"])

    assert result == [
        "server {",
        "    listen 80;",
        "    location / {",
        "        new_one;",
        "        new_two;",
        "    }",
        "}",
    ]


@pytest.mark.parametrize(
    "text",
    [
        "server {\n    listen 80;\n",
        "server {\n}\n}\n",
        "http {\n}\n",
        "server {\n    location / {\n}\n",
    ],
)
def test_malformed_files_raise(text: str) -> None:
    """Unbalanced or unexpected braces are reported, never guessed at."""
    with pytest.raises(BlockStructureError):
        find_server_blocks(text.splitlines())
