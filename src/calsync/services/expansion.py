import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from dateutil.rrule import rrulestr
from pydantic import BaseModel

from calsync.services.calendar_event import Event
from calsync.services.dates import local_date
from calsync.services.recurrence import dateutil_rule
from calsync.sync.errors import TranslationSkipped

# Set up logging
logger = logging.getLogger(__name__)


class EventOccurrence(BaseModel):
    """One visible occurrence: a stored event or a generated instance of a master"""
    id: str
    event: Event
    start_time: datetime
    end_time: datetime
    is_recurrence_instance: bool = False
    original_event_id: Optional[str] = None


def _overlaps(event: Event, range_start: datetime, range_end: datetime) -> bool:
    return event.start_time <= range_end and event.end_time >= range_start


def _as_occurrence(event: Event) -> EventOccurrence:
    return EventOccurrence(id=event.id, event=event, start_time=event.start_time, end_time=event.end_time)


def expand_recurring_events(
    events: List[Event],
    range_start: datetime,
    range_end: datetime,
) -> List[EventOccurrence]:
    """
    Expand recurring masters into occurrences within [range_start, range_end].

    Stored instances (rows with recurring_event_id) take precedence over the
    generated occurrence for the same day. The result is sorted by start time
    and de-duplicated by (calendar_id, title, start_time).
    """
    results: List[EventOccurrence] = []

    instances_by_master: Dict[str, List[Event]] = {}
    for event in events:
        if event.recurring_event_id:
            instances_by_master.setdefault(event.recurring_event_id, []).append(event)

    for event in events:
        if not event.recurrence_rule or event.recurring_event_id:
            if _overlaps(event, range_start, range_end):
                results.append(_as_occurrence(event))
            continue

        try:
            rule = rrulestr(dateutil_rule(event.recurrence_rule), dtstart=event.start_time)
            occurrences = rule.between(range_start, range_end, inc=True)
        except (TranslationSkipped, ValueError) as e:
            logger.error(f"Failed to parse recurrence for event {event.id}: {e}")
            if _overlaps(event, range_start, range_end):
                results.append(_as_occurrence(event))
            continue

        duration = event.end_time - event.start_time
        instances = instances_by_master.get(event.external_id or "", [])
        for occurrence in occurrences:
            day = local_date(occurrence)
            covered = any(
                (i.original_start_time and local_date(i.original_start_time) == day)
                or local_date(i.start_time) == day
                for i in instances
            )
            if covered:
                continue
            results.append(EventOccurrence(
                id=f"{event.id}_{occurrence.astimezone(timezone.utc).isoformat()}",
                event=event,
                start_time=occurrence,
                end_time=occurrence + duration,
                is_recurrence_instance=True,
                original_event_id=event.id,
            ))

    seen = set()
    deduplicated = []
    for occurrence in results:
        key = (occurrence.event.calendar_id, occurrence.event.title, occurrence.start_time)
        if key in seen:
            continue
        seen.add(key)
        deduplicated.append(occurrence)

    deduplicated.sort(key=lambda o: o.start_time)
    return deduplicated
