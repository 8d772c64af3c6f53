"""Provider event → display event normalization.

Pure transformation, no I/O. Multi-day all-day events are expanded into one
display record per calendar day; timed events are always a single record
anchored to their start day, even when they end after midnight.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from datetime import date, datetime, timedelta, tzinfo

from cbtjournal.calendar.models import (
    UNTITLED_EVENT_TITLE,
    DisplayEvent,
    EventDateTime,
    EventStatus,
    ProviderEvent,
)

logger = logging.getLogger(__name__)

DISPLAY_ID_PREFIX = "gcal"
_ONE_DAY = timedelta(days=1)


def local_timezone() -> tzinfo:
    """Return the system's local timezone."""
    local = datetime.now().astimezone().tzinfo
    assert local is not None
    return local


def start_of_day(value: date, tz: tzinfo) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=tz)


def end_of_day(value: date, tz: tzinfo) -> datetime:
    return datetime(value.year, value.month, value.day, 23, 59, 59, 999000, tzinfo=tz)


def format_clock(value: datetime) -> str:
    return value.strftime("%H:%M")


class EventNormalizer:
    """Turns provider events into per-day display records in a fixed timezone."""

    def __init__(self, tz: tzinfo | None = None) -> None:
        self._tz = tz or local_timezone()

    @property
    def tz(self) -> tzinfo:
        return self._tz

    def normalize(self, events: Iterable[ProviderEvent]) -> list[DisplayEvent]:
        display_events: list[DisplayEvent] = []
        for event in events:
            if event.status is EventStatus.cancelled:
                continue
            display_events.extend(self.normalize_event(event))
        return display_events

    def normalize_event(self, event: ProviderEvent) -> list[DisplayEvent]:
        event_start = self._boundary_instant(event.start)
        event_end = self._boundary_instant(event.end)
        start_day = event_start.date()
        end_day = event_end.date()

        if start_day != end_day and event.is_all_day:
            return self._expand_all_day(event, start_day, end_day)

        return [
            DisplayEvent(
                id=f"{DISPLAY_ID_PREFIX}-{event.id}",
                provider_event_id=event.id,
                title=event.summary or UNTITLED_EVENT_TITLE,
                day=start_day,
                start_time=None if event.is_all_day else format_clock(event_start),
                end_time=(
                    format_clock(event.end.date_time.astimezone(self._tz))
                    if event.end.date_time is not None
                    else None
                ),
                is_all_day=event.is_all_day,
                description=event.description,
                html_link=event.html_link,
            )
        ]

    def _expand_all_day(
        self,
        event: ProviderEvent,
        start_day: date,
        end_day: date,
    ) -> list[DisplayEvent]:
        # The provider's all-day end date is exclusive.
        day_count = math.ceil((end_day - start_day) / _ONE_DAY)
        if day_count < 1:
            logger.warning(
                "All-day event %s ends before it starts (%s -> %s); skipping",
                event.id,
                start_day,
                end_day,
            )
            return []

        expanded: list[DisplayEvent] = []
        current_day = start_day
        while current_day < end_day:
            ordinal = math.ceil((current_day - start_day) / _ONE_DAY) + 1
            label = (
                f"Day 1 of {day_count}"
                if current_day == start_day
                else f"Day {ordinal} of {day_count}"
            )
            expanded.append(
                DisplayEvent(
                    id=f"{DISPLAY_ID_PREFIX}-{event.id}-{current_day.isoformat()}",
                    provider_event_id=event.id,
                    title=event.summary or UNTITLED_EVENT_TITLE,
                    day=current_day,
                    is_all_day=True,
                    is_multi_day=True,
                    multi_day_label=label,
                    description=event.description,
                    html_link=event.html_link,
                )
            )
            current_day += _ONE_DAY
        return expanded

    def _boundary_instant(self, boundary: EventDateTime) -> datetime:
        if boundary.date_time is not None:
            return boundary.date_time.astimezone(self._tz)
        assert boundary.all_day_date is not None
        return start_of_day(boundary.all_day_date, self._tz)
