"""
Utility functions for file system operations, naming rules and timestamps.

This module provides helper functions for:
- The group name rule applied before names become part of an output path
- Ensuring directory creation with proper error handling
- Producing timezone-aware UTC timestamps for the durable store
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Group names become file names verbatim, so only this set is accepted
GROUP_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

# Pattern to match characters that are not safe for a download file name
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


def sanitize_filename(title: str, fallback: str) -> str:
    """
    Generate a filesystem-safe file stem from user input.

    Args:
        title: The original title string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A filesystem-safe stem or the fallback value

    Example:
        >>> sanitize_filename("Quarterly Report!", "merged")
        "Quarterly-Report"
        >>> sanitize_filename("@#$", "merged")
        "merged"
    """
    cleaned = SANITIZE_PATTERN.sub("-", title.strip())
    cleaned = cleaned.strip("-_.")
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    This is a safe idempotent operation that won't fail if the directory
    already exists.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Serialize an optional datetime to ISO 8601."""
    return value.isoformat() if value else None


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Deserialize an ISO 8601 string, or return None for empty values."""
    if not value:
        return None
    return datetime.fromisoformat(value)
