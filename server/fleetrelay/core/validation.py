"""History query validation.

The browser checks the same rules for early feedback, but this is the
authoritative check: nothing reaches the upstream reports endpoint unless it
passes here.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from fleetrelay.core.models import RouteQuery

# Longest history window the upstream is asked for in a single request.
MAX_ROUTE_SPAN = timedelta(days=7)

_DEVICE_ID = re.compile(r"-?[0-9]+")

MISSING_PARAMETERS = "Missing required parameters: deviceId, from, to"
INVALID_DEVICE_ID = "Invalid deviceId format"
INVALID_DATE = "Invalid date format. Use ISO 8601 format."
START_AFTER_END = "Start date must be before end date"
RANGE_TOO_LARGE = "Date range cannot exceed 7 days"
END_IN_FUTURE = "End date cannot be in the future"


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO-8601 date-time. Naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        # Offset pushes the instant outside the representable range.
        return None


def parse_route_query(
    device_id: str | None,
    start: str | None,
    end: str | None,
    now: datetime | None = None,
) -> tuple[RouteQuery | None, str]:
    """Validate raw query parameters. Returns (query, error_message).

    Checks run in a fixed order and stop at the first failure, so the error
    message always names the earliest problem.
    """
    if not device_id or not start or not end:
        return None, MISSING_PARAMETERS

    if not _DEVICE_ID.fullmatch(device_id):
        return None, INVALID_DEVICE_ID
    parsed_id = int(device_id)

    start_dt = parse_timestamp(start)
    end_dt = parse_timestamp(end)
    if start_dt is None or end_dt is None:
        return None, INVALID_DATE

    if start_dt >= end_dt:
        return None, START_AFTER_END

    if end_dt - start_dt > MAX_ROUTE_SPAN:
        return None, RANGE_TOO_LARGE

    if now is None:
        now = datetime.now(timezone.utc)
    if end_dt > now:
        return None, END_IN_FUTURE

    return RouteQuery(device_id=parsed_id, start=start_dt, end=end_dt), ""
