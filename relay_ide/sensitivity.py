"""Sensitive-path gate — refuse reads of credential-shaped files.

Pure functions over relative paths; no I/O.  Each pattern is tested
against both the full normalised path and its basename.
"""

from __future__ import annotations

import re

from relay_ide.errors import SensitivePathError

DEFAULT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("dotenv", re.compile(r"^\.env$")),
    ("dotenv_variant", re.compile(r"^\.env\..+$")),
    ("credentials", re.compile(r"credentials", re.IGNORECASE)),
    ("secrets", re.compile(r"secrets?", re.IGNORECASE)),
    ("pem", re.compile(r"\.pem$")),
    ("key", re.compile(r"\.key$")),
    ("pkcs12", re.compile(r"\.(p12|pfx)$")),
    ("git_config", re.compile(r"^\.git/config$")),
    ("ssh_key", re.compile(r"id_(rsa|ed25519|ecdsa|dsa)")),
    ("aws", re.compile(r"\.aws/(credentials|config)$")),
    ("gcloud", re.compile(r"gcloud.*credentials", re.IGNORECASE)),
    ("auth_rc", re.compile(r"\.(npmrc|netrc|htpasswd)$")),
    ("shell_history", re.compile(r"\.(bash|zsh)_history$")),
)


def match_sensitive(rel_path: str) -> str | None:
    """Return the name of the first matching pattern, or ``None``."""
    normalised = rel_path.replace("\\", "/")
    while normalised.startswith("./"):
        normalised = normalised[2:]
    basename = normalised.rsplit("/", 1)[-1]

    for candidate in (normalised, basename):
        for name, pattern in DEFAULT_PATTERNS:
            if pattern.search(candidate):
                return name
    return None


def is_sensitive(rel_path: str) -> bool:
    return match_sensitive(rel_path) is not None


def ensure_not_sensitive(rel_path: str) -> None:
    """Raise :class:`SensitivePathError` if *rel_path* looks like a secret."""
    name = match_sensitive(rel_path)
    if name is not None:
        raise SensitivePathError(rel_path, name)
