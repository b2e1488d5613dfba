"""
Utility functions for identifiers, object keys and filesystem paths.

This module provides helper functions for:
- Deriving the vendor idempotency key from a payment session
- Building object storage keys for order artifacts
- Sanitizing user-provided labels (team names) for titles and keys
- Ensuring directory creation for local state
"""

from __future__ import annotations

import re
from pathlib import Path

# Pattern to match characters that are not safe for object keys
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

EXTERNAL_ID_PREFIX = "ts"


def derive_external_id(payment_session_id: str, session_created: int) -> str:
    """
    Build the idempotency key presented to the print vendor.

    Both inputs come from the payment session itself, so every redelivery of
    the same checkout event produces the same id.

    Args:
        payment_session_id: Payment processor session identifier
        session_created: Session creation time (unix seconds)

    Returns:
        ``ts_<last 12 chars of the session id>_<created>``

    Example:
        >>> derive_external_id("cs_test_0123456789abcdef", 1718000000)
        "ts_456789abcdef_1718000000"
    """
    if not payment_session_id:
        raise ValueError("payment_session_id is required")
    suffix = sanitize_label(payment_session_id[-12:], fallback="session", lowercase=False)
    return f"{EXTERNAL_ID_PREFIX}_{suffix}_{int(session_created)}"


def artifact_key(prefix: str, external_id: str, filename: str) -> str:
    """
    Object key for an order artifact, e.g. ``orders/ts_abc_123/cover.pdf``.

    Keys are stable for a given order so a retried upload overwrites the
    previous object rather than leaving a second copy behind.
    """
    return f"{prefix.strip('/')}/{external_id}/{filename}"


def sanitize_label(label: str, fallback: str, lowercase: bool = True) -> str:
    """
    Generate a key-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string
        lowercase: Fold to lowercase (session ids keep their case)

    Returns:
        A key-safe label or the fallback value

    Example:
        >>> sanitize_label("Riverside FC!", "team")
        "riverside-fc"
        >>> sanitize_label("@#$", "team")
        "team"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.")
    if lowercase:
        cleaned = cleaned.lower()
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path
