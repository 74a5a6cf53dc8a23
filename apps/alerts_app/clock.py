# Canonical UTC time source for every elapsed-time computation.
from datetime import datetime, timezone as dt_timezone

from django.utils import timezone
from django.utils.dateparse import parse_datetime


def truncate_to_millis(value):
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def parse_utc(value):
    """
    Parse a stored timestamp as UTC.

    Naive values are taken to be UTC, never device-local time. Aware values
    are converted to UTC. Returns None for empty or unparseable input.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = parse_datetime(str(value).strip().replace(' ', 'T', 1))
        if parsed is None:
            return None
    if timezone.is_naive(parsed):
        return timezone.make_aware(parsed, dt_timezone.utc)
    return parsed.astimezone(dt_timezone.utc)


class SystemClock:
    """Server clock in UTC with millisecond precision."""

    def now_utc(self):
        return truncate_to_millis(timezone.now().astimezone(dt_timezone.utc))
