"""
Provides common, stateless utility functions used across the application.

This module is a collection of simple, reusable helper functions that do not
fit into a more specific module and have no external dependencies other than
standard Python libraries.
"""
import re
import secrets
import time
from datetime import datetime, timezone

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def now_iso() -> str:
    """Returns the current UTC time as an ISO-8601 string, as the datastore expects."""
    return datetime.now(timezone.utc).isoformat()


def now_millis() -> int:
    return int(time.time() * 1000)


def sanitize_file_name(name: str, fallback: str = "file") -> str:
    """
    Reduces a user-supplied file name to a storage-safe form.

    Path separators and anything outside [A-Za-z0-9._-] collapse to a single
    underscore, so the result can never escape the folder it is joined to.
    """
    base = (name or "").replace("\\", "/").split("/")[-1]
    cleaned = _UNSAFE_NAME_CHARS.sub("_", base).strip("._")
    return cleaned[:120] or fallback


def unique_storage_path(folder: str, file_name: str) -> str:
    """Builds a collision-resistant object path: <folder>/<ms>_<token>_<name>."""
    token = secrets.token_hex(5)
    return f"{folder.rstrip('/')}/{now_millis()}_{token}_{sanitize_file_name(file_name)}"


def chunk_text(text: str, size: int) -> list[str]:
    """Splits a string into consecutive slices of at most `size` characters."""
    if not text:
        return []
    return [text[i : i + size] for i in range(0, len(text), size)]
