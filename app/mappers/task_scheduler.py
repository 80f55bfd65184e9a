"""Pure functions for scheduling call retries inside an agent's calling hours.

No I/O, no side effects. Uses zoneinfo (stdlib) and holidays (pip).
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import holidays

from app.schemas.agents import Agent

logger = logging.getLogger(__name__)

MAX_SEARCH_DAYS = 14


def get_timezone(name: str | None) -> ZoneInfo:
    """Return ZoneInfo for an IANA name. Falls back to UTC."""
    if not name or not name.strip():
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC", name)
        return ZoneInfo("UTC")


def is_business_day(day: date, holiday_country: str | None = None) -> bool:
    """Mon-Fri and not a public holiday in *holiday_country* (ISO code)."""
    if day.weekday() >= 5:
        return False
    if holiday_country:
        try:
            year_holidays = holidays.country_holidays(
                holiday_country.strip().upper(), years=day.year,
            )
        except NotImplementedError:
            logger.warning("No holiday calendar for %r", holiday_country)
            return True
        if day in year_holidays:
            return False
    return True


def next_business_day(
    reference: date, holiday_country: str | None = None,
    *, include_reference: bool = False,
) -> date:
    """Return the next business day.

    When *include_reference* is False (default), always advances at least
    1 day from *reference*.  When True, *reference* itself is returned if
    it is already a business day.
    """
    candidate = reference if include_reference else reference + timedelta(days=1)

    for _ in range(30):  # safety cap
        if is_business_day(candidate, holiday_country):
            return candidate
        candidate += timedelta(days=1)

    return candidate


def _allowed_hours(agent: Agent) -> list[int]:
    return sorted({h for h in agent.allowed_calling_hours if 0 <= h <= 23})


def is_within_calling_hours(agent: Agent, now: datetime | None = None) -> bool:
    """True when *now* is an allowed local hour on a business day.

    Agents without configured calling hours may call at any time.
    """
    hours = _allowed_hours(agent)
    if not hours:
        return True
    if now is None:
        now = datetime.now(timezone.utc)
    local_now = now.astimezone(get_timezone(agent.timezone))
    return (
        local_now.hour in hours
        and is_business_day(local_now.date(), agent.holiday_country)
    )


def compute_next_retry_at(agent: Agent, now: datetime | None = None) -> datetime:
    """Earliest allowed instant at or after now + the agent's retry delay (UTC)."""
    if now is None:
        now = datetime.now(timezone.utc)
    candidate = now + timedelta(minutes=max(0, agent.retry_delay_minutes))

    hours = _allowed_hours(agent)
    if not hours:
        return candidate

    tz = get_timezone(agent.timezone)
    local = candidate.astimezone(tz)

    for _ in range(MAX_SEARCH_DAYS):
        day = local.date()
        if is_business_day(day, agent.holiday_country):
            if local.hour in hours:
                return local.astimezone(timezone.utc)
            later = [h for h in hours if h > local.hour]
            if later:
                return datetime.combine(day, time(later[0]), tzinfo=tz).astimezone(timezone.utc)
        day = next_business_day(day, agent.holiday_country)
        local = datetime.combine(day, time(hours[0]), tzinfo=tz)

    logger.warning(
        "No calling slot within %d days for agent %s, using raw delay",
        MAX_SEARCH_DAYS, agent.id,
    )
    return candidate
