"""Input normalisation shared by the form schemas and the newsletter service."""
import re
from typing import Optional

# Letters (including Latin-1 accents), whitespace, apostrophes and hyphens
NAME_PATTERN = re.compile(r"^[a-zA-ZÀ-ÿ\s'-]*$")
PHONE_PATTERN = re.compile(r"^[+]?[0-9\s\-()]+$")

_ANGLE_BRACKETS = re.compile(r"[<>]")


def sanitize_input(value: Optional[str], max_length: int) -> Optional[str]:
    """Trim, drop angle brackets and cap the length of a user-supplied string."""
    if value is None:
        return None
    cleaned = _ANGLE_BRACKETS.sub("", value.strip())
    return cleaned[:max_length].strip()


def is_valid_name(value: str) -> bool:
    return bool(NAME_PATTERN.match(value))


def is_valid_phone(value: str) -> bool:
    return bool(PHONE_PATTERN.match(value))
