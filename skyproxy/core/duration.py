"""Human-readable duration parsing for provider timeouts."""
import re

DURATION_PATTERN = re.compile(r"^(\d+)(ms|s|m|h)?$")

# Multipliers to milliseconds, keyed by unit suffix
UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
}


def parse_duration(text: str) -> int:
    """Parse a duration string such as "60s", "2m" or "500ms".

    A bare number is read as seconds.

    Args:
        text: Duration string

    Returns:
        Duration in milliseconds

    Raises:
        ValueError: If the string does not match <int>[ms|s|m|h]
    """
    match = DURATION_PATTERN.match(str(text).strip())
    if not match:
        raise ValueError(f"Invalid duration format: {text}")

    value = int(match.group(1))
    unit = match.group(2) or "s"
    return value * UNIT_MS[unit]

