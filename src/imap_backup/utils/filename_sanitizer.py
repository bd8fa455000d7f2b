"""
Filename sanitization helpers for IMAP Backup.

Turns sender display names, attachment names and mailbox folder names
into tokens that are safe to use as file and directory names.
"""

import os
from datetime import datetime, timezone
from typing import Optional

UNKNOWN_TOKEN = "Unknown"
MAX_TOKEN_LENGTH = 50
TIMESTAMP_FORMAT = "%Y-%m-%d_%H_%M_%S"

# Characters that are never allowed in a generated filename
FORBIDDEN_CHARACTERS = frozenset('/\\:*?"<>| .\t\n\r')


def _clean(text: str) -> str:
    """Replace unsafe characters with underscores, trim and truncate."""
    cleaned = []
    for char in text:
        if char in FORBIDDEN_CHARACTERS:
            cleaned.append("_")
        elif char.isascii() and char.isprintable() and not char.isspace():
            cleaned.append(char)
        else:
            cleaned.append("_")

    result = "".join(cleaned).strip("_")
    return result[:MAX_TOKEN_LENGTH]


def sanitize(text: Optional[str]) -> str:
    """
    Map arbitrary text to a filesystem-safe token.

    Args:
        text: Text to sanitize (sender name, subject, ...)

    Returns:
        str: Token of at most 50 characters, or "Unknown" if nothing survived
    """
    result = _clean(text or "")
    # Truncation may expose a trailing underscore
    result = result.rstrip("_")
    return result or UNKNOWN_TOKEN


def extract_sender_token(from_header: Optional[str]) -> str:
    """
    Derive a filename token from a From header value.

    Accepts ``Display Name <address>`` or a bare address. The display name
    wins when present, then the address local part, then the whole value.

    Args:
        from_header: Raw From header value

    Returns:
        str: Sanitized sender token
    """
    value = from_header or ""

    if "<" in value:
        name = value[:value.index("<")].strip()
        if name:
            return sanitize(name)

    if "@" in value:
        local_part = value[:value.index("@")].strip()
        if local_part:
            return sanitize(local_part)

    return sanitize(value.strip())


def sanitize_attachment_filename(filename: Optional[str]) -> str:
    """
    Sanitize an attachment filename while keeping its extension.

    Returns an empty string when the name has no usable stem, in which case
    the caller skips the attachment.
    """
    if not filename:
        return ""

    stem, extension = os.path.splitext(filename.strip())
    clean_stem = _clean(stem).rstrip("_")
    if not clean_stem:
        return ""

    clean_extension = "".join(c for c in extension[1:] if c.isascii() and c.isalnum())[:10]
    if clean_extension:
        return f"{clean_stem}.{clean_extension}"
    return clean_stem


def safe_path_component(name: str) -> str:
    """Make a single directory name safe without otherwise altering it."""
    component = name.replace("/", "_").replace("\\", "_").replace("\x00", "_").strip()
    if component in ("", ".", ".."):
        return "_"
    return component


def format_timestamp(moment: datetime, use_utc: bool = True) -> str:
    """
    Format a datetime as a fixed-width, sortable filename timestamp.

    Naive datetimes are treated as UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)

    if use_utc:
        moment = moment.astimezone(timezone.utc)
    else:
        moment = moment.astimezone()

    return moment.strftime(TIMESTAMP_FORMAT)
