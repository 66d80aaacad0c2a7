# time_utils.py
import datetime
import math
from collections.abc import Mapping

MS_PER_HOUR = 60 * 60 * 1000
MS_PER_DAY = 24 * MS_PER_HOUR


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def now_iso():
    return utcnow().isoformat(timespec="microseconds")


def to_iso(value):
    """Stored form of a timestamp: UTC ISO-8601 with a fixed width, so text order is time order."""
    if value is None or value == "":
        return None
    return from_millis(to_millis(value)).isoformat(timespec="microseconds")


def _datetime_to_millis(value):
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return int(round(value.timestamp() * 1000))


def to_millis(value):
    """
    Normalize any timestamp shape we store or receive to epoch milliseconds.

    Accepted shapes:
      - datetime (naive values are UTC)
      - ISO-8601 string, as written by the db layer
      - int/float: client clock, already epoch milliseconds
      - server timestamps: objects or mappings with seconds/nanoseconds
        (or the serialized _seconds/_nanoseconds form)
      - objects exposing to_datetime()
    None becomes 0 so unknown times sort first.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        raise TypeError("not a timestamp: %r" % (value,))
    if isinstance(value, datetime.datetime):
        return _datetime_to_millis(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _datetime_to_millis(datetime.datetime.fromisoformat(text))
        except ValueError:
            # sqlite CURRENT_TIMESTAMP format
            return _datetime_to_millis(datetime.datetime.strptime(text, "%Y-%m-%d %H:%M:%S"))
    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
        if seconds is None:
            raise TypeError("timestamp mapping without seconds: %r" % (value,))
        return int(seconds) * 1000 + int(nanos) // 1_000_000
    if hasattr(value, "to_datetime"):
        return _datetime_to_millis(value.to_datetime())
    if hasattr(value, "seconds"):
        return int(value.seconds) * 1000 + int(getattr(value, "nanoseconds", 0) or 0) // 1_000_000
    raise TypeError("unsupported timestamp: %r" % (value,))


def from_millis(ms):
    return datetime.datetime.fromtimestamp(ms / 1000, tz=datetime.timezone.utc)


def time_ago(value, now=None):
    now_ms = to_millis(now) if now is not None else to_millis(utcnow())
    diff = max(0, now_ms - to_millis(value))
    minutes = diff // 60000
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = diff // MS_PER_HOUR
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = diff // MS_PER_DAY
    return f"{days} day{'s' if days != 1 else ''} ago"


def time_until(deadline, now=None):
    """Pickup countdown label for a collect-by deadline."""
    if deadline is None:
        return "No deadline"
    now_ms = to_millis(now) if now is not None else to_millis(utcnow())
    diff = to_millis(deadline) - now_ms
    if diff < 0:
        return "Overdue"
    if diff < MS_PER_HOUR:
        return "Less than 1 hour left"
    hours = math.ceil(diff / MS_PER_HOUR)
    if hours < 24:
        return f"{hours} hours left"
    return f"{math.ceil(diff / MS_PER_DAY)} days left"
