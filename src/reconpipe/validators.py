"""Scan target validation.

Every domain that reaches a shell command passes through :func:`validate_domain`
first; commands additionally ``shlex.quote`` it.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

from reconpipe.errors import InvalidTargetError

MAX_DOMAIN_LENGTH = 253

DOMAIN_REGEX = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,63}$"
)
SHELL_METACHARACTERS = re.compile(r"[;&|`$(){}\[\]!<>\\'\"#\n\r\t]")

_BLOCKED_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "::1"})
_BLOCKED_PATTERNS = (
    re.compile(r"^10\."),
    re.compile(r"^172\.(1[6-9]|2[0-9]|3[01])\."),
    re.compile(r"^192\.168\."),
    re.compile(r"^169\.254\."),
    re.compile(r"^metadata\."),
)


def _strip_to_host(raw: str) -> str:
    """``https://Example.com:8443/path`` → ``example.com``."""
    value = raw.strip().lower()
    if "://" in value:
        value = urlsplit(value).netloc
    value = value.split("/", 1)[0]
    # Leave bare IPv6 literals alone; everything else may carry a :port
    if value.count(":") == 1:
        value = value.split(":", 1)[0]
    return value


def validate_domain(raw: object) -> str:
    """Return the normalized domain or raise :class:`InvalidTargetError`."""
    if not isinstance(raw, str):
        raise InvalidTargetError("Target must be a string")

    # Metacharacters are checked before any normalization so that nothing
    # is silently dropped from a hostile input
    if SHELL_METACHARACTERS.search(raw.strip()):
        raise InvalidTargetError("Invalid characters detected in target")

    domain = _strip_to_host(raw)
    if not domain:
        raise InvalidTargetError("Target domain cannot be empty")
    if len(domain) > MAX_DOMAIN_LENGTH:
        raise InvalidTargetError(
            f"Target domain exceeds maximum length ({MAX_DOMAIN_LENGTH} chars)"
        )

    for blocked in _BLOCKED_HOSTS:
        if domain == blocked or domain.endswith("." + blocked):
            raise InvalidTargetError(f"Scanning {blocked} is not permitted")
    if any(pattern.match(domain) for pattern in _BLOCKED_PATTERNS):
        raise InvalidTargetError("Scanning internal/private targets is not permitted")

    if not DOMAIN_REGEX.match(domain):
        raise InvalidTargetError("Invalid domain format. Expected: example.com")
    return domain
