"""Parser for schedule expressions.

Accepts `now`, `today` and `current`, a signed offset such as `+2h` or
`-30m`, or an absolute ISO-8601 timestamp.
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..errors import ScheduleParseError

NOW_ALIASES = frozenset({"now", "today", "current"})

RELATIVE_PATTERN = re.compile(r"^([+-]?\d+)\s*([smhdw])$", re.IGNORECASE)

UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3_600,
    "d": 86_400,
    "w": 604_800,
}


def parse_schedule(raw: Optional[str], now: Optional[datetime] = None) -> datetime:
    """
    Parse a schedule expression into an aware UTC datetime.

    Args:
        raw: Expression to parse
        now: Reference time for aliases and offsets (default: current time)

    Returns:
        Absolute timestamp

    Raises:
        ScheduleParseError: Empty or unrecognized expression
    """
    text = (raw or "").strip()
    if not text:
        raise ScheduleParseError("Schedule time is required.")

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    if text.lower() in NOW_ALIASES:
        return now

    match = RELATIVE_PATTERN.match(text)
    if match:
        amount = int(match.group(1))
        unit = match.group(2).lower()
        try:
            return now + timedelta(seconds=amount * UNIT_SECONDS[unit])
        except OverflowError as e:
            raise ScheduleParseError(f"Schedule offset out of range: {raw}") from e

    # fromisoformat rejects a trailing Z before 3.11
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00") if text.endswith("Z") else text)
    except ValueError as e:
        raise ScheduleParseError(
            f"Invalid schedule time: {raw}. Use now, an offset like +2h, or an ISO-8601 date."
        ) from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
