import calendar
import datetime
import decimal
import uuid

from django.utils import timezone


def _to_json_compatible(value):
    if isinstance(value, dict):
        return {key: _to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_json_compatible(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime, datetime.time)):
        return value.isoformat()
    return value


def local_now():
    """Current time in the configured civil timezone (settings.TIME_ZONE)."""
    return timezone.localtime(timezone.now())


def local_today():
    return local_now().date()


def days_in_month(year, month):
    return calendar.monthrange(year, month)[1]


def iter_dates(start, end):
    current = start
    while current <= end:
        yield current
        current += datetime.timedelta(days=1)


def parse_iso_date(value):
    if isinstance(value, datetime.date):
        return value
    if not value:
        return None
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        return None
