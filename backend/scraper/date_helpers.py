"""
Date/time helpers for the portal's local-time cells.

The date and time fragments are located with patterns derived from the
configured date format ("%d.%m.%Y %H:%M" by default), so cells may carry
noise around them ("Pon, 6.10.2025", " 8:15 ").
"""

import re
from datetime import datetime, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

DIRECTIVE_PATTERNS = {
    "d": r"\d{1,2}",
    "m": r"\d{1,2}",
    "Y": r"\d{4}",
    "y": r"\d{2}",
    "H": r"\d{1,2}",
    "I": r"\d{1,2}",
    "M": r"\d{2}",
    "S": r"\d{2}",
    "b": r"[^\W\d_]+",
    "B": r"[^\W\d_]+",
    "p": r"[AaPp][Mm]",
    "%": "%",
}
DIRECTIVE_RE = re.compile(r"%(.)")
TIME_DIRECTIVES = ("%H", "%I")


def _fragment_pattern(fmt: str) -> re.Pattern:
    parts = []
    position = 0
    for match in DIRECTIVE_RE.finditer(fmt):
        parts.append(re.escape(fmt[position:match.start()]))
        directive = match.group(1)
        if directive not in DIRECTIVE_PATTERNS:
            raise ValueError(f"Unsupported directive %{directive} in date format '{fmt}'")
        parts.append(DIRECTIVE_PATTERNS[directive])
        position = match.end()
    parts.append(re.escape(fmt[position:]))
    # \s in the format matches any run of whitespace in the cell
    pattern = "".join(parts).replace(r"\ ", r"\s+")
    return re.compile(rf"(?<!\w)({pattern})(?!\w)")


@lru_cache(maxsize=None)
def split_date_format(date_format: str) -> tuple[str, str, re.Pattern, re.Pattern]:
    """Split "%d.%m.%Y %H:%M" into its date and time halves plus a search pattern for each.

    Raises:
        ValueError: if the format has no hour directive or an unsupported directive
    """
    starts = [date_format.find(d) for d in TIME_DIRECTIVES if d in date_format]
    if not starts:
        raise ValueError(f"Date format '{date_format}' has no hour directive")
    split_at = min(starts)
    date_fmt = date_format[:split_at].strip()
    time_fmt = date_format[split_at:].strip()
    if not date_fmt:
        raise ValueError(f"Date format '{date_format}' must start with the date part")
    return date_fmt, time_fmt, _fragment_pattern(date_fmt), _fragment_pattern(time_fmt)


def parse_local_to_utc(date_str: str, time_str: str, date_format: str, tz_name: str) -> datetime:
    """Combine a sheet date and time, interpret them in tz_name and return UTC.

    Only the first date-looking and time-looking fragments are used.

    Raises:
        ValueError: if either fragment is missing or does not match date_format
    """
    date_fmt, time_fmt, date_re, time_re = split_date_format(date_format)
    date_match = date_re.search(date_str or "")
    time_match = time_re.search(time_str or "")
    if not date_match or not time_match:
        raise ValueError(f"Invalid date/time. date='{date_str}', time='{time_str}'")

    local_naive = datetime.strptime(
        f"{date_match.group(1)} {time_match.group(1)}",
        f"{date_fmt} {time_fmt}",
    )
    return local_naive.replace(tzinfo=ZoneInfo(tz_name)).astimezone(timezone.utc)


def parse_time_range(date_str: str, range_str: str, date_format: str, tz_name: str) -> tuple[datetime, datetime]:
    """Parse "08:15 - 10:00" on the given date into a (start, finish) UTC pair."""
    parts = (range_str or "").split("-")
    if len(parts) < 2:
        raise ValueError(f"Invalid time range: '{range_str}'")
    start_at = parse_local_to_utc(date_str, parts[0], date_format, tz_name)
    finish_at = parse_local_to_utc(date_str, parts[1], date_format, tz_name)
    return start_at, finish_at
