import re
from datetime import datetime, timedelta, timezone
from typing import Dict

# Unit sizes in nanoseconds
NANOSECOND = 1
MICROSECOND = 1_000 * NANOSECOND
MILLISECOND = 1_000 * MICROSECOND
SECOND = 1_000 * MILLISECOND
MINUTE = 60 * SECOND
HOUR = 60 * MINUTE

UNITS: Dict[str, int] = {
    "ns": NANOSECOND,
    "us": MICROSECOND,
    "µs": MICROSECOND,  # micro sign
    "μs": MICROSECOND,  # greek mu
    "ms": MILLISECOND,
    "s": SECOND,
    "m": MINUTE,
    "h": HOUR,
}

_DIGITS_RE = re.compile(r"^[0-9.]+$")
_DURATION_RE = re.compile(r"^[-+]?(?:(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:ns|us|µs|μs|ms|s|m|h))+$")
_COMPONENT_RE = re.compile(r"([0-9]*)(?:\.([0-9]*))?(ns|us|µs|μs|ms|s|m|h)")
_RFC3339_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class BadParameter(ValueError):
    """A time or duration query parameter could not be parsed."""

    def __init__(self, raw: str, kind: str):
        self.raw = raw
        self.kind = kind
        super().__init__(f'cannot parse "{raw}" to a valid {kind}')


def is_numeric(s: str) -> bool:
    return bool(_DIGITS_RE.match(s))


def _seconds_to_ns(s: str, kind: str) -> int:
    try:
        return int(float(s) * SECOND)
    except (ValueError, OverflowError):
        raise BadParameter(s, kind) from None


def parse_rfc3339(s: str) -> int:
    """
    Parse an RFC3339 timestamp into nanoseconds since the epoch.

    Fractional seconds are kept down to the nanosecond; extra digits are
    truncated.
    """
    m = _RFC3339_RE.match(s)
    if not m:
        raise BadParameter(s, "timestamp")
    year, month, day, hour, minute, second, frac, offset = m.groups()
    try:
        if offset in ("Z", "z"):
            tz = timezone.utc
        else:
            sign = -1 if offset[0] == "-" else 1
            tz = timezone(sign * timedelta(hours=int(offset[1:3]), minutes=int(offset[4:6])))
        dt = datetime(int(year), int(month), int(day), int(hour), int(minute), int(second), tzinfo=tz)
    except ValueError:
        raise BadParameter(s, "timestamp") from None

    delta = dt - _EPOCH
    ns = (delta.days * 86400 + delta.seconds) * SECOND
    if frac:
        ns += int(frac[:9].ljust(9, "0"))
    return ns


def parse_compact_duration(s: str) -> int:
    """
    Parse a unit-suffixed duration literal such as "300ms", "2m" or "1h30m".

    A bare "0" is accepted as zero. Fractions are allowed on every component
    ("1.5h").
    """
    if s == "0":
        return 0
    if not _DURATION_RE.match(s):
        raise BadParameter(s, "duration")

    sign = 1
    body = s
    if body[0] in "+-":
        sign = -1 if body[0] == "-" else 1
        body = body[1:]

    total = 0
    for whole, frac, unit in _COMPONENT_RE.findall(body):
        size = UNITS[unit]
        total += int(whole or "0") * size
        if frac:
            total += int(frac) * size // (10 ** len(frac))
    return sign * total


def parse_time(s: str) -> int:
    """
    Parse an instant query parameter.

    Args:
        s: Either seconds since the epoch ("1577836800", "1577836800.25")
           or an RFC3339 timestamp ("2020-01-01T00:00:00Z")

    Returns:
        int: Nanoseconds since the epoch
    """
    if is_numeric(s):
        return _seconds_to_ns(s, "timestamp")
    return parse_rfc3339(s)


def parse_duration(s: str) -> int:
    """
    Parse a duration query parameter.

    Args:
        s: Either a number of seconds ("120", "0.5") or a compact literal ("2m")

    Returns:
        int: Duration in nanoseconds
    """
    if is_numeric(s):
        return _seconds_to_ns(s, "duration")
    return parse_compact_duration(s)


def format_duration(ns: int) -> str:
    """Render a duration the way it is written in configuration, e.g. 1h30m0s."""
    if ns == 0:
        return "0s"
    sign = "-" if ns < 0 else ""
    ns = abs(ns)
    if ns < SECOND:
        if ns < MICROSECOND:
            return f"{sign}{ns}ns"
        if ns < MILLISECOND:
            return f"{sign}{_trim(ns, MICROSECOND)}µs"
        return f"{sign}{_trim(ns, MILLISECOND)}ms"

    hours, rest = divmod(ns, HOUR)
    minutes, rest = divmod(rest, MINUTE)
    seconds = _trim(rest, SECOND)
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{sign}{minutes}m{seconds}s"
    return f"{sign}{seconds}s"


def _trim(ns: int, unit: int) -> str:
    whole, frac = divmod(ns, unit)
    if not frac:
        return str(whole)
    digits = len(str(unit)) - 1
    return f"{whole}.{str(frac).rjust(digits, '0').rstrip('0')}"


def format_time(ns: int) -> str:
    """Render nanoseconds since the epoch as an RFC3339 UTC timestamp."""
    seconds, frac = divmod(ns, SECOND)
    try:
        dt = _EPOCH + timedelta(seconds=seconds)
    except OverflowError:
        return f"{ns}ns"
    text = dt.strftime("%Y-%m-%dT%H:%M:%S")
    if frac:
        text += "." + str(frac).rjust(9, "0").rstrip("0")
    return text + "Z"
