"""
Go-style duration parsing and status timestamp helpers.

JWKS resources and operator settings express intervals the way the
Go-based Kubernetes tooling does: ``"300ms"``, ``"5m"``, ``"6h"``,
``"1h30m"``. Values are returned as float seconds.
"""

import re
from datetime import UTC, datetime

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_COMPONENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str | int | float) -> float:
    """
    Parse a duration into seconds.

    Numbers are taken as seconds. Strings must follow Go's
    ``time.ParseDuration`` syntax; a bare ``"0"`` is accepted.

    Raises:
        ValueError: If the string is not a valid duration
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, int | float):
        return float(value)

    text = value.strip()
    if not text:
        raise ValueError("invalid duration: empty string")

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    if text == "0":
        return 0.0

    total = 0.0
    position = 0
    while position < len(text):
        match = _COMPONENT.match(text, position)
        if match is None:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _UNITS[match.group(2)]
        position = match.end()

    return sign * total


def effective_interval(override: str | None, default: float) -> float:
    """
    Resolve a per-resource interval override against the global default.

    Missing, unparseable and non-positive overrides fall back to ``default``.
    """
    if not override:
        return default
    try:
        parsed = parse_duration(override)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def format_timestamp(moment: datetime) -> str:
    """Render a timestamp the way Kubernetes metav1.Time does."""
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an RFC 3339 timestamp from a resource status, or None."""
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
