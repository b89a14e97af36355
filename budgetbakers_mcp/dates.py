"""Date helpers: flexible user input parsing and store timestamp formatting."""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

import structlog
from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

log = structlog.get_logger(__name__)

JsonSerializable = Union[str, int, float, bool, None, List['JsonSerializable'], Dict[str, 'JsonSerializable']]
DateConvertible = Union[date, datetime, JsonSerializable]

_RELATIVE_PATTERN = re.compile(r'(\d+)\s+(days?|weeks?|months?|years?)\s+ago')


def parse_flexible_date(date_input: str) -> date:
    """
    Parse flexible date inputs including natural language.

    Supports:
    - "today", "now"
    - "yesterday"
    - "this month", "current month"
    - "last month", "previous month"
    - "this year", "current year"
    - "last year", "previous year"
    - "last week", "this week"
    - "30 days ago", "6 months ago"
    - Any date format supported by dateutil.parser
    """
    if not date_input:
        raise ValueError("Date input cannot be empty")

    date_input = date_input.lower().strip()
    today = date.today()

    if date_input in ["today", "now"]:
        return today
    elif date_input == "yesterday":
        return today - timedelta(days=1)
    elif date_input in ["this month", "current month"]:
        return date(today.year, today.month, 1)
    elif date_input in ["last month", "previous month"]:
        if today.month == 1:
            return date(today.year - 1, 12, 1)
        else:
            return date(today.year, today.month - 1, 1)
    elif date_input in ["this year", "current year"]:
        return date(today.year, 1, 1)
    elif date_input in ["last year", "previous year"]:
        return date(today.year - 1, 1, 1)
    elif date_input == "last week":
        return today - timedelta(days=7)
    elif date_input == "this week":
        return today - timedelta(days=today.weekday())

    relative = _RELATIVE_PATTERN.match(date_input)
    if relative:
        amount = int(relative.group(1))
        unit = relative.group(2).rstrip('s')
        try:
            if unit == 'day':
                return today - timedelta(days=amount)
            elif unit == 'week':
                return today - timedelta(weeks=amount)
            elif unit == 'month':
                return today - relativedelta(months=amount)
            else:
                return today - relativedelta(years=amount)
        except (ValueError, OverflowError) as e:
            log.warning("Invalid relative date calculation", input=date_input, amount=amount, unit=unit, error=str(e))
            raise ValueError(f"Invalid relative date: {date_input}")

    try:
        parsed_date = date_parser.parse(date_input).date()
    except (ValueError, TypeError, OverflowError) as e:
        log.warning("Failed to parse date with dateutil", input=date_input, error=str(e))
        raise ValueError(
            f"Could not parse date '{date_input}'. "
            "Try formats like: 2024-01-15, Jan 15 2024. "
            "Or natural language: today, yesterday, last month, 30 days ago"
        )

    # Validate reasonable date range (1900 to 50 years in future)
    if parsed_date < date(1900, 1, 1) or parsed_date > date(today.year + 50, 12, 31):
        log.warning("Date outside reasonable range", input=date_input, parsed_date=parsed_date.isoformat())
        raise ValueError(f"Date {parsed_date.isoformat()} is outside reasonable range (1900-{today.year + 50})")

    return parsed_date


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp into an aware UTC datetime, or None if unusable."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = date_parser.isoparse(value)
        except ValueError:
            try:
                parsed = date_parser.parse(value)
            except (ValueError, OverflowError):
                return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_store_timestamp(value: datetime) -> str:
    """Format like JavaScript's ``toISOString()``: ``2025-06-05T15:00:00.000Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def utc_now() -> str:
    return to_store_timestamp(datetime.now(timezone.utc))


def convert_dates_to_strings(obj: DateConvertible) -> JsonSerializable:
    """
    Recursively convert all date/datetime objects to ISO format strings.

    Tool results are serialised with the stock JSON encoder, which does not
    understand dates.
    """
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    elif isinstance(obj, dict):
        return {key: convert_dates_to_strings(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [convert_dates_to_strings(item) for item in obj]
    elif isinstance(obj, tuple):
        return tuple(convert_dates_to_strings(item) for item in obj)  # type: ignore[unreachable]
    else:
        return obj
