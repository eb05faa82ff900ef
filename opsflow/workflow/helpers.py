""" Built-in helper functions callable from {{...}} expressions. """
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

HELPERS: Dict[str, Callable[..., Any]] = {}

DEFAULT_DATE_FORMAT = "%b %d, %Y"


def register_helper(name: str):
    def _wrap(fn):
        HELPERS[name] = fn
        return fn
    return _wrap


def get_helper(name: str) -> Callable[..., Any]:
    if name not in HELPERS:
        raise KeyError(f"Unknown helper: {name}")
    return HELPERS[name]


def to_datetime(value: Any) -> datetime:
    """ Coerce ISO strings, dates and epoch milliseconds into an aware datetime (UTC if naive). """
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime.combine(value, time.min)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        result = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        result = date_parser.isoparse(value.strip())
    else:
        raise ValueError(f"Cannot interpret {value!r} as a date")
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


def to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("booleans are not numbers")
    if isinstance(value, (int, float, Decimal)):
        return value
    if isinstance(value, str):
        text = value.strip()
        return int(text) if text.lstrip("-").isdigit() else float(text)
    raise TypeError(f"Cannot interpret {value!r} as a number")


# Dates

@register_helper("now")
def now() -> datetime:
    return datetime.now(timezone.utc)


@register_helper("today")
def today() -> datetime:
    return datetime.combine(datetime.now(timezone.utc).date(), time.min, tzinfo=timezone.utc)


@register_helper("addDays")
def add_days(value: Any, days: Any) -> datetime:
    return to_datetime(value) + timedelta(days=to_number(days))


@register_helper("subtractDays")
def subtract_days(value: Any, days: Any) -> datetime:
    return to_datetime(value) - timedelta(days=to_number(days))


@register_helper("addHours")
def add_hours(value: Any, hours: Any) -> datetime:
    return to_datetime(value) + timedelta(hours=to_number(hours))


@register_helper("addMonths")
def add_months(value: Any, months: Any) -> datetime:
    return to_datetime(value) + relativedelta(months=int(to_number(months)))


@register_helper("daysBetween")
def days_between(start: Any, end: Any) -> int:
    return (to_datetime(end) - to_datetime(start)).days


@register_helper("formatDate")
def format_date(value: Any, fmt: str = DEFAULT_DATE_FORMAT) -> str:
    return to_datetime(value).strftime(fmt)


# Arithmetic

@register_helper("add")
def add(a: Any, b: Any) -> float:
    return to_number(a) + to_number(b)


@register_helper("subtract")
def subtract(a: Any, b: Any) -> float:
    return to_number(a) - to_number(b)


@register_helper("multiply")
def multiply(a: Any, b: Any) -> float:
    return to_number(a) * to_number(b)


@register_helper("divide")
def divide(a: Any, b: Any) -> float:
    return to_number(a) / to_number(b)


@register_helper("round")
def round_number(value: Any, digits: Any = 0) -> float:
    return round(to_number(value), int(to_number(digits)))
