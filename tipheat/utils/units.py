"""Conversion between smallest-unit integers and decimal token strings."""
import re
from datetime import datetime, timezone
from typing import Optional

DEFAULT_DECIMALS = 18

AMOUNT_RE = re.compile(r"^([+-]?)(\d+)(?:\.(\d*))?$")


def format_units(value: int, decimals: int = DEFAULT_DECIMALS) -> str:
    """Render an integer amount as an exact decimal string ("35", "0.5", "-1.25")."""
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(int(value)), 10 ** decimals)
    if decimals == 0 or frac == 0:
        return f"{sign}{whole}"
    frac_str = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{frac_str}"


def parse_units(text: str, decimals: int = DEFAULT_DECIMALS) -> int:
    """Inverse of format_units. Rejects values with more fractional digits than decimals."""
    match = AMOUNT_RE.match(text.strip()) if isinstance(text, str) else None
    if not match:
        raise ValueError(f"invalid amount: {text!r}")
    sign, whole, frac = match.group(1), match.group(2), match.group(3) or ""
    frac = frac.rstrip("0")
    if len(frac) > decimals:
        raise ValueError(f"{text!r} has more than {decimals} fractional digits")
    value = int(whole) * 10 ** decimals + int(frac.ljust(decimals, "0") or "0")
    return -value if sign == "-" else value


def whole_units(value: int, decimals: int = DEFAULT_DECIMALS) -> int:
    """Truncate a smallest-unit amount to whole tokens."""
    return int(value) // (10 ** decimals)


def iso_timestamp(ts: Optional[int]) -> Optional[str]:
    """Unix seconds to ISO-8601 UTC. None and the unresolved sentinel 0 map to None."""
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
