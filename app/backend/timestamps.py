from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from errors import MalformedTimestampError

LOCAL_TZ_NAME = "Europe/Helsinki"
KEY_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def get_local_tz(tz_name):
    try:
        return ZoneInfo(tz_name) if tz_name else datetime.now().astimezone().tzinfo
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        return datetime.now().astimezone().tzinfo


def to_rfc3339(dt):
    return dt.isoformat().replace("+00:00", "Z")


def parse_instant(value, source_tz=timezone.utc):
    """Parse an ISO 8601 string to an aware datetime.

    Strings without an offset are read as wall-clock time in ``source_tz``.
    """
    if not isinstance(value, str):
        raise MalformedTimestampError(value, "not a string")
    text = value.strip()
    if not text:
        raise MalformedTimestampError(value, "empty")
    if text[-1] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise MalformedTimestampError(value, str(exc)) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=source_tz or timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError) as exc:
        raise MalformedTimestampError(value, str(exc)) from exc


def normalize_timestamp(value, source_tz=timezone.utc):
    """Return the canonical join key (UTC, second precision) for ``value``."""
    instant = parse_instant(value, source_tz)
    return instant.replace(microsecond=0).strftime(KEY_FORMAT)


def parse_normalized_key(key):
    try:
        return datetime.strptime(key, KEY_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError) as exc:
        raise MalformedTimestampError(key, "not a normalized key") from exc


def month_key(key):
    # Keys are fixed-width, so the UTC month is the first seven characters.
    parse_normalized_key(key)
    return key[:7]


def hour_key(dt):
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    floored = dt.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
    return floored.strftime(KEY_FORMAT)


def to_local_iso(value, tzinfo):
    """Render an instant as local wall-clock time with its UTC offset."""
    instant = parse_instant(value)
    return instant.astimezone(tzinfo).replace(microsecond=0).isoformat()
