"""Input validation utilities."""

import re
from typing import Iterable

from .exceptions import PathViolation

_FORBIDDEN_IDENTIFIER_CHARS = re.compile(r'[/\\\x00]')


def validate_identifier(value: str, kind: str = "identifier") -> str:
    """
    Check that a collection or log identifier is a single path component.

    Raises:
        PathViolation: if the identifier could address anything other than
            one entry directly under its parent directory
    """
    if not isinstance(value, str) or not value.strip():
        raise PathViolation(f"Invalid {kind}: must be a non-empty string")

    if value in (".", "..") or _FORBIDDEN_IDENTIFIER_CHARS.search(value):
        raise PathViolation(f"Invalid {kind} '{excerpt(value, 40)}': path syntax is not allowed")

    return value


def excerpt(text: str, limit: int = 100) -> str:
    """Truncate text for diagnostics, marking the cut with '...'."""
    if text is None:
        return ""
    text = str(text)
    return text[:limit] + ("..." if len(text) > limit else "")


def redact_paths(text: str, paths: Iterable[str], placeholder: str = "<root>") -> str:
    """Replace internal absolute paths in tool output with a placeholder."""
    for path in sorted((p for p in paths if p), key=len, reverse=True):
        text = text.replace(path, placeholder)
    return text
