from __future__ import annotations

from datetime import datetime, time, timedelta
from typing import Optional

from .models import SiteConfig, TimeTableEntry

FALLBACK_RECHECK_SECONDS = 3600
_SEARCH_DAYS = 7

OpenWindow = tuple[datetime, datetime]


def config_weekday(moment: datetime) -> int:
    return moment.isoweekday() % 7


def entry_for(site: SiteConfig, weekday: int) -> Optional[TimeTableEntry]:
    # Duplicated weekdays: the first entry wins.
    return next((entry for entry in site.time_table if entry.weekday == weekday), None)


def _at(day: datetime, clock: time) -> datetime:
    return day.replace(hour=clock.hour, minute=clock.minute, second=clock.second, microsecond=0)


def _time_of_day(moment: datetime) -> time:
    return moment.time().replace(tzinfo=None)


def is_full_day_close(site: SiteConfig, now: datetime) -> bool:
    entry = entry_for(site, config_weekday(now))
    return bool(entry and entry.full_day_close)


def is_open_now(site: SiteConfig, now: datetime) -> bool:
    if not site.time_table:
        return True
    entry = entry_for(site, config_weekday(now))
    if entry is None or entry.full_day_close:
        return False
    current = _time_of_day(now)
    start, end = entry.start, entry.end
    if end < start:
        return current >= start or current <= end
    return start <= current <= end


def _active_window(entry: TimeTableEntry, now: datetime) -> OpenWindow:
    """Window of today's entry that contains ``now`` (caller checked openness)."""
    start, end = entry.start, entry.end
    if end < start:
        if _time_of_day(now) <= end:
            return _at(now - timedelta(days=1), start), _at(now, end)
        return _at(now, start), _at(now + timedelta(days=1), end)
    return _at(now, start), _at(now, end)


def _window_on(day: datetime, entry: TimeTableEntry) -> OpenWindow:
    start = _at(day, entry.start)
    end = _at(day, entry.end)
    if entry.wraps_midnight:
        end += timedelta(days=1)
    return start, end


def _next_window(site: SiteConfig, now: datetime) -> Optional[OpenWindow]:
    today = entry_for(site, config_weekday(now))
    if today is not None and not today.full_day_close and _time_of_day(now) < today.start:
        return _window_on(now, today)
    for offset in range(1, _SEARCH_DAYS + 1):
        day = now + timedelta(days=offset)
        entry = entry_for(site, config_weekday(day))
        if entry is None or entry.full_day_close:
            continue
        return _window_on(day, entry)
    return None


def current_or_next_open_window(site: SiteConfig, now: datetime) -> Optional[OpenWindow]:
    if not site.time_table:
        return None
    entry = entry_for(site, config_weekday(now))
    if entry is not None and is_open_now(site, now):
        return _active_window(entry, now)
    return _next_window(site, now)


def seconds_until_next_transition(site: SiteConfig, now: datetime) -> int:
    """Seconds until the site next changes between open and closed.

    Open sites report the distance to the close edge of the active window, closed
    sites the distance to the next open edge within a week. A closed site with no
    reachable window reports ``FALLBACK_RECHECK_SECONDS``; that is a re-check
    cadence, not a promise that anything changes then.
    """
    if not site.time_table:
        return 0
    entry = entry_for(site, config_weekday(now))
    if entry is not None and is_open_now(site, now):
        _, close_at = _active_window(entry, now)
        return max(0, int(close_at.timestamp() - now.timestamp()))
    window = _next_window(site, now)
    if window is None:
        return FALLBACK_RECHECK_SECONDS
    return max(0, int(window[0].timestamp() - now.timestamp()))


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h{(seconds % 3600) // 60}m"
