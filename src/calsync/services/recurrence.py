"""
Recurrence Translator

Canonical recurrence is an RFC 5545 RRULE body without the "RRULE:" prefix,
e.g. "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=10".

Google already speaks RRULE, so its translation is a prefix strip/add with
validation. Microsoft Graph uses a pattern/range object pair that is mapped
through fixed weekday and position tables. Translation is best-effort: anything
that cannot be expressed degrades to no recurrence and is logged.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from dateutil.rrule import rrulestr
from pydantic import BaseModel, Field

from calsync.sync.errors import TranslationSkipped

# Set up logging
logger = logging.getLogger(__name__)

FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")

MS_DAY_MAP = {
    "sunday": "SU",
    "monday": "MO",
    "tuesday": "TU",
    "wednesday": "WE",
    "thursday": "TH",
    "friday": "FR",
    "saturday": "SA",
}
RRULE_DAY_MAP = {code: name for name, code in MS_DAY_MAP.items()}

MS_INDEX_MAP = {
    "first": 1,
    "second": 2,
    "third": 3,
    "fourth": 4,
    "last": -1,
}
RRULE_INDEX_MAP = {position: name for name, position in MS_INDEX_MAP.items()}

WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")

RULE_PARTS = ("FREQ", "INTERVAL", "BYDAY", "BYMONTHDAY", "BYMONTH", "BYSETPOS", "UNTIL", "COUNT")

# Anchor for validating rules before an event start is known
VALIDATION_START = datetime(2000, 1, 1, tzinfo=timezone.utc)


class RecurrenceRule(BaseModel):
    """Parsed form of a canonical rule"""
    frequency: str
    interval: int = 1
    by_day: List[str] = Field(default_factory=list)  # "MO", "2TU", "-1FR"
    by_month_day: List[int] = Field(default_factory=list)
    by_month: List[int] = Field(default_factory=list)
    by_set_pos: List[int] = Field(default_factory=list)
    until: Optional[str] = None  # Raw UNTIL value, "20260301T235959Z" or "20260301"
    count: Optional[int] = None
    extra: Dict[str, str] = Field(default_factory=dict)  # WKST, BYHOUR, ... kept verbatim

    @classmethod
    def parse(cls, rule: str) -> "RecurrenceRule":
        body = rule.strip()
        if body.upper().startswith("RRULE:"):
            body = body[len("RRULE:"):]
        parts: Dict[str, str] = {}
        for part in body.split(";"):
            if not part:
                continue
            key, sep, value = part.partition("=")
            if not sep:
                raise TranslationSkipped(f"Malformed recurrence part {part!r}")
            parts[key.strip().upper()] = value.strip()

        frequency = parts.get("FREQ", "").upper()
        if frequency not in FREQUENCIES:
            raise TranslationSkipped(f"Unsupported recurrence frequency {frequency!r}")

        try:
            return cls(
                frequency=frequency,
                interval=int(parts.get("INTERVAL", "1") or 1),
                by_day=[d.upper() for d in _split(parts.get("BYDAY"))],
                by_month_day=[int(d) for d in _split(parts.get("BYMONTHDAY"))],
                by_month=[int(m) for m in _split(parts.get("BYMONTH"))],
                by_set_pos=[int(p) for p in _split(parts.get("BYSETPOS"))],
                until=parts.get("UNTIL") or None,
                count=int(parts["COUNT"]) if parts.get("COUNT") else None,
                extra={key: value for key, value in parts.items() if key not in RULE_PARTS},
            )
        except ValueError as e:
            raise TranslationSkipped(f"Malformed recurrence rule {rule!r}: {e}") from e

    def to_rrule(self) -> str:
        parts = [f"FREQ={self.frequency}", f"INTERVAL={self.interval}"]
        if self.by_day:
            parts.append(f"BYDAY={','.join(self.by_day)}")
        if self.by_set_pos:
            parts.append(f"BYSETPOS={','.join(str(p) for p in self.by_set_pos)}")
        if self.by_month:
            parts.append(f"BYMONTH={','.join(str(m) for m in self.by_month)}")
        if self.by_month_day:
            parts.append(f"BYMONTHDAY={','.join(str(d) for d in self.by_month_day)}")
        if self.until:
            parts.append(f"UNTIL={self.until}")
        elif self.count:
            parts.append(f"COUNT={self.count}")
        parts.extend(f"{key}={value}" for key, value in self.extra.items())
        return ";".join(parts)

    def until_date(self) -> Optional[date]:
        if not self.until:
            return None
        raw = self.until[:8]
        return date(int(raw[0:4]), int(raw[4:6]), int(raw[6:8]))


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _split_by_day(token: str) -> Tuple[Optional[int], str]:
    """Split "2TU" into (2, "TU") and "MO" into (None, "MO")"""
    code = token[-2:]
    if code not in WEEKDAY_CODES:
        raise TranslationSkipped(f"Unknown weekday {token!r}")
    prefix = token[:-2]
    if not prefix:
        return None, code
    try:
        return int(prefix), code
    except ValueError as e:
        raise TranslationSkipped(f"Unknown weekday position {token!r}") from e


def dateutil_rule(rule_text: str) -> str:
    """Rule text for rrulestr; UNTIL must be UTC because DTSTART is always timezone-aware"""
    rule = RecurrenceRule.parse(rule_text)
    if rule.until and not rule.until.endswith("Z"):
        rule.until = rule.until[:8] + "T235959Z"
    return rule.to_rrule()


def validate_rrule(rule_text: str, dtstart: Optional[datetime] = None) -> None:
    """Raise TranslationSkipped unless dateutil accepts the rule"""
    try:
        rrulestr(dateutil_rule(rule_text), dtstart=dtstart or VALIDATION_START)
    except ValueError as e:
        raise TranslationSkipped(f"Invalid recurrence rule {rule_text!r}: {e}") from e


# --- Google ---

def google_to_rrule(recurrence: Optional[List[str]]) -> Optional[str]:
    """Canonical rule from a Google recurrence[] list"""
    if not recurrence:
        return None
    line = next((r for r in recurrence if r.upper().startswith("RRULE:")), None)
    if line is None:
        return None
    body = line[len("RRULE:"):]
    try:
        validate_rrule(body)
    except TranslationSkipped as e:
        logger.warning(f"Dropping Google recurrence {line!r}: {e}")
        return None
    return body


def rrule_to_google(rule: Optional[str]) -> Optional[List[str]]:
    """Google recurrence[] list from a canonical rule"""
    if not rule:
        return None
    return [f"RRULE:{rule}"]


# --- Microsoft Graph ---

def _ms_days(days: Optional[List[str]]) -> List[str]:
    codes = []
    for day in days or []:
        code = MS_DAY_MAP.get(day.lower())
        if code is None:
            raise TranslationSkipped(f"Unknown Graph weekday {day!r}")
        codes.append(code)
    return codes


def _relative_by_day(pattern: Dict[str, Any], rule: RecurrenceRule) -> None:
    index = pattern.get("index") or "first"
    position = MS_INDEX_MAP.get(index)
    if position is None:
        raise TranslationSkipped(f"Unknown Graph week index {index!r}")
    days = _ms_days(pattern.get("daysOfWeek"))
    if not days:
        raise TranslationSkipped("Relative pattern without daysOfWeek")
    if len(days) == 1:
        rule.by_day = [f"{position}{days[0]}"]
    else:
        rule.by_day = days
        rule.by_set_pos = [position]


def _strict_microsoft_to_rrule(recurrence: Dict[str, Any]) -> str:
    pattern = recurrence.get("pattern") or {}
    recurrence_range = recurrence.get("range") or {}
    pattern_type = pattern.get("type")
    interval = pattern.get("interval") or 1

    if pattern_type == "daily":
        rule = RecurrenceRule(frequency="DAILY", interval=interval)
    elif pattern_type == "weekly":
        rule = RecurrenceRule(frequency="WEEKLY", interval=interval, by_day=_ms_days(pattern.get("daysOfWeek")))
    elif pattern_type == "absoluteMonthly":
        rule = RecurrenceRule(frequency="MONTHLY", interval=interval)
        if pattern.get("dayOfMonth"):
            rule.by_month_day = [pattern["dayOfMonth"]]
    elif pattern_type == "relativeMonthly":
        rule = RecurrenceRule(frequency="MONTHLY", interval=interval)
        _relative_by_day(pattern, rule)
    elif pattern_type == "absoluteYearly":
        rule = RecurrenceRule(frequency="YEARLY", interval=interval)
        if pattern.get("month"):
            rule.by_month = [pattern["month"]]
        if pattern.get("dayOfMonth"):
            rule.by_month_day = [pattern["dayOfMonth"]]
    elif pattern_type == "relativeYearly":
        rule = RecurrenceRule(frequency="YEARLY", interval=interval)
        if pattern.get("month"):
            rule.by_month = [pattern["month"]]
        _relative_by_day(pattern, rule)
    else:
        raise TranslationSkipped(f"Unknown Graph pattern type {pattern_type!r}")

    range_type = recurrence_range.get("type")
    if range_type == "endDate" and recurrence_range.get("endDate"):
        rule.until = recurrence_range["endDate"].replace("-", "") + "T235959Z"
    elif range_type == "numbered" and recurrence_range.get("numberOfOccurrences"):
        rule.count = recurrence_range["numberOfOccurrences"]
    # noEnd leaves the rule unbounded

    return rule.to_rrule()


def microsoft_to_rrule(recurrence: Optional[Dict[str, Any]]) -> Optional[str]:
    """Canonical rule from a Graph patternedRecurrence"""
    if not recurrence:
        return None
    try:
        return _strict_microsoft_to_rrule(recurrence)
    except TranslationSkipped as e:
        logger.warning(f"Dropping Microsoft recurrence {recurrence!r}: {e}")
        return None


def _strict_rrule_to_microsoft(rule_text: str, start: date) -> Dict[str, Any]:
    rule = RecurrenceRule.parse(rule_text)
    split_days = [_split_by_day(token) for token in rule.by_day]
    positions = {position for position, _ in split_days if position is not None}
    day_names = [RRULE_DAY_MAP[code] for _, code in split_days]
    if rule.by_set_pos and positions:
        raise TranslationSkipped(f"BYSETPOS combined with positional weekdays in {rule_text!r}")
    if rule.by_set_pos:
        positions = set(rule.by_set_pos)
    if len(positions) > 1:
        raise TranslationSkipped(f"Mixed weekday positions in {rule_text!r}")
    if len(rule.by_month_day) > 1 or len(rule.by_month) > 1:
        raise TranslationSkipped(f"Graph patterns hold one day of month and one month: {rule_text!r}")
    unsupported = set(rule.extra) - {"WKST"}
    if unsupported:
        raise TranslationSkipped(f"Graph patterns cannot express {', '.join(sorted(unsupported))} in {rule_text!r}")
    week_start = RRULE_DAY_MAP.get(rule.extra.get("WKST", "SU").upper(), "sunday")
    relative = bool(positions)

    pattern: Dict[str, Any] = {"interval": rule.interval}
    if rule.frequency == "DAILY":
        if relative or rule.by_month_day or rule.by_month:
            raise TranslationSkipped(f"Daily rule with unsupported parts {rule_text!r}")
        if day_names:
            # Every weekday and the like: weekly on those days
            if rule.interval != 1:
                raise TranslationSkipped(f"Daily rule with interval and weekdays {rule_text!r}")
            pattern["type"] = "weekly"
            pattern["daysOfWeek"] = day_names
            pattern["firstDayOfWeek"] = week_start
        else:
            pattern["type"] = "daily"
    elif rule.frequency == "WEEKLY":
        if relative:
            raise TranslationSkipped(f"Positional weekdays in weekly rule {rule_text!r}")
        if rule.by_month_day or rule.by_month:
            raise TranslationSkipped(f"Weekly rule with unsupported parts {rule_text!r}")
        pattern["type"] = "weekly"
        pattern["daysOfWeek"] = day_names or [RRULE_DAY_MAP[WEEKDAY_CODES[start.weekday()]]]
        pattern["firstDayOfWeek"] = week_start
    elif rule.frequency == "MONTHLY":
        if rule.by_month:
            raise TranslationSkipped(f"Monthly rule restricted to months {rule_text!r}")
        if relative:
            if rule.by_month_day:
                raise TranslationSkipped(f"Monthly rule with both weekdays and days of month {rule_text!r}")
            pattern["type"] = "relativeMonthly"
        elif day_names:
            raise TranslationSkipped(f"Monthly weekday rule without position {rule_text!r}")
        else:
            pattern["type"] = "absoluteMonthly"
            pattern["dayOfMonth"] = rule.by_month_day[0] if rule.by_month_day else start.day
    else:
        pattern["month"] = rule.by_month[0] if rule.by_month else start.month
        if relative:
            if rule.by_month_day:
                raise TranslationSkipped(f"Yearly rule with both weekdays and days of month {rule_text!r}")
            pattern["type"] = "relativeYearly"
        elif day_names:
            raise TranslationSkipped(f"Yearly weekday rule without position {rule_text!r}")
        else:
            pattern["type"] = "absoluteYearly"
            pattern["dayOfMonth"] = rule.by_month_day[0] if rule.by_month_day else start.day

    if relative:
        position = positions.pop()
        index = RRULE_INDEX_MAP.get(position)
        if index is None:
            raise TranslationSkipped(f"Unsupported weekday position {position} in {rule_text!r}")
        pattern["index"] = index
        pattern["daysOfWeek"] = day_names

    recurrence_range: Dict[str, Any] = {"startDate": start.isoformat()}
    if rule.until:
        recurrence_range["type"] = "endDate"
        recurrence_range["endDate"] = rule.until_date().isoformat()
    elif rule.count:
        recurrence_range["type"] = "numbered"
        recurrence_range["numberOfOccurrences"] = rule.count
    else:
        recurrence_range["type"] = "noEnd"

    return {"pattern": pattern, "range": recurrence_range}


def rrule_to_microsoft(rule: Optional[str], start: date) -> Optional[Dict[str, Any]]:
    """Graph patternedRecurrence from a canonical rule; start anchors the range"""
    if not rule:
        return None
    try:
        return _strict_rrule_to_microsoft(rule, start)
    except (TranslationSkipped, ValueError) as e:
        logger.warning(f"Dropping recurrence {rule!r} for Microsoft: {e}")
        return None
