"""
Text processing utilities
Functions for cleaning user-supplied names and identifiers
"""
import re

from chatsync.exceptions import ValidationError

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_-]+$")
MAX_FILE_NAME_LENGTH = 255


def sanitize_file_name(file_name: str) -> str:
    """
    Make a file name safe to use as the last segment of a storage path

    Args:
        file_name: Name as chosen by the user or reported by the picker

    Returns:
        Sanitized name, or "unnamed" if nothing usable remains
    """
    if not file_name:
        return "unnamed"

    name = file_name.strip()
    name = re.sub(r"\s+", "-", name)
    # Remove path separators
    name = re.sub(r"[/\\]", "", name)
    # Remove anything outside the safe set
    name = re.sub(r"[^\w.-]", "", name, flags=re.ASCII)
    name = name[:MAX_FILE_NAME_LENGTH]
    # Remove leading/trailing dots
    name = name.strip(".")
    return name or "unnamed"


def ensure_identifier(value: str, field: str = "id") -> str:
    """
    Validate an id before it is interpolated into a store filter

    Args:
        value: User or message identifier
        field: Field name used in the error message

    Returns:
        The identifier unchanged

    Raises:
        ValidationError: If the identifier is empty or has unexpected characters
    """
    if not value or not _IDENTIFIER_RE.match(str(value)):
        raise ValidationError(f"Invalid {field}")
    return str(value)
