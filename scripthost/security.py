import os
import re
from typing import Any, Optional

from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

MAX_SEGMENT_LENGTH = 255
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")

# Compared against when the user does not exist so both failure paths cost one hash check.
_UNKNOWN_USER_HASH = generate_password_hash("scripthost-unknown-user")


def sanitize_path_segment(raw: Optional[str]) -> str:
    """Return *raw* reduced to a value safe to use as a single path segment.

    Separators, parent references, null bytes, whitespace runs and leading or
    trailing dots are removed. Applying the function to its own output returns
    the same string. An empty string means nothing usable was left.
    """

    if not raw:
        return ""
    cleaned = secure_filename(raw)
    if len(cleaned) > MAX_SEGMENT_LENGTH:
        stem, extension = os.path.splitext(cleaned)
        if len(extension) > 16:
            extension = ""
        stem = stem[: MAX_SEGMENT_LENGTH - len(extension)].rstrip("._")
        cleaned = f"{stem}{extension}" if stem else cleaned[:MAX_SEGMENT_LENGTH].rstrip("._")
    return cleaned


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: Optional[str], password: str) -> bool:
    if not password_hash:
        check_password_hash(_UNKNOWN_USER_HASH, password)
        return False
    return check_password_hash(password_hash, password)
