"""Dosage schedule resolver.

Maps medication dosage instructions onto concrete "HH:MM" clock times for
reminders and adherence tracking. Three input shapes are understood:

- free-text instructions ("Take 1 tablet BID", "at 9:00 PM", "as needed"),
  resolved through the ordered rule list ``DOSAGE_RULES``;
- structured FHIR ``Timing`` objects (``repeat.when``, ``repeat.timeOfDay``,
  ``repeat.frequency``/``period``/``periodUnit`` and ``code.coding``);
- coded frequency abbreviations inside ``Timing.code``.

Schedules are always deduplicated and sorted; zero-padded 24h strings sort
chronologically. An empty schedule means "no fixed times" and is a valid
result (PRN, or text no rule recognised; ``resolve_schedule`` tells them
apart).

The clock helpers (``next_dose_time``, ``is_overdue``) compare times of day
only and never look at dates.
"""

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from edcare.models.dosage import DoseEvent, NextDose, ResolvedSchedule, ScheduleKind

logger = logging.getLogger(__name__)

TWICE_DAILY = ["08:00", "20:00"]
THREE_TIMES_DAILY = ["08:00", "14:00", "20:00"]
FOUR_TIMES_DAILY = ["08:00", "12:00", "17:00", "21:00"]

FREQUENCY_TIMES = {
    1: ["08:00"],
    2: TWICE_DAILY,
    3: THREE_TIMES_DAILY,
    4: FOUR_TIMES_DAILY,
}

WHEN_CODE_TIMES = {
    "MORN": ["08:00"],
    "CM": ["08:00"],
    "NOON": ["12:00"],
    "AFT": ["14:00"],
    "CV": ["14:00"],
    "EVE": ["18:00"],
    "CD": ["18:00"],
    "NIGHT": ["21:00"],
    "HS": ["21:00"],
    "AC": ["07:30", "11:30", "17:30"],
    "PC": ["08:30", "12:30", "18:30"],
}

TIMING_CODE_TIMES = {
    "BID": TWICE_DAILY,
    "TID": THREE_TIMES_DAILY,
    "QID": FOUR_TIMES_DAILY,
    "QD": ["08:00"],
    "DAILY": ["08:00"],
    "QHS": ["21:00"],
}

CLOCK_TIME_PATTERN = re.compile(r"\bat\s+(\d{1,2}):?(\d{0,2})?\s*(am|pm)?", re.IGNORECASE)
EVERY_N_HOURS_PATTERN = re.compile(r"every\s+(\d+)\s+hours?", re.IGNORECASE)
TIMES_PER_DAY_PATTERN = re.compile(r"(\d+)\s+times?\s+(per\s+)?(a\s+)?day", re.IGNORECASE)
PRN_PATTERN = re.compile(r"\bprn\b|as\s+needed|when\s+needed|if\s+needed", re.IGNORECASE)

# Time-of-day hints for once-daily instructions, checked in order
DAILY_HINTS = [
    (re.compile(r"morning|breakfast|\bam\b", re.IGNORECASE), "08:00"),
    (re.compile(r"evening|dinner|supper|\bpm\b", re.IGNORECASE), "18:00"),
    (re.compile(r"bedtime|night|\bhs\b", re.IGNORECASE), "21:00"),
    (re.compile(r"noon|lunch|midday", re.IGNORECASE), "12:00"),
]
DEFAULT_DAILY_TIME = "08:00"


@dataclass(frozen=True)
class DosageRule:
    """One step of the free-text cascade.

    ``resolve`` returns the times for a lower-cased instruction, or None when
    the rule does not apply. An empty list is a definitive "no fixed times".
    """
    name: str
    kind: ScheduleKind
    resolve: Callable[[str], list[str] | None]


def _keyword_rule(name: str, pattern: str, times: list[str]) -> DosageRule:
    compiled = re.compile(pattern, re.IGNORECASE)

    def resolve(text: str) -> list[str] | None:
        return list(times) if compiled.search(text) else None

    return DosageRule(name=name, kind=ScheduleKind.FIXED, resolve=resolve)


def _format_clock(hour: int, minute: int = 0) -> str:
    return f"{hour:02d}:{minute:02d}"


def _clock_times(text: str) -> list[str] | None:
    times = []
    for match in CLOCK_TIME_PATTERN.finditer(text):
        hour = int(match.group(1))
        minute = int(match.group(2)) if match.group(2) else 0
        period = (match.group(3) or "").lower()

        if period == "pm" and hour < 12:
            hour += 12
        if period == "am" and hour == 12:
            hour = 0
        if hour > 23 or minute > 59:
            continue
        times.append(_format_clock(hour, minute))
    return times or None


DAILY_PATTERN = re.compile(r"\bqd\b|\bdaily\b|once\s+(a\s+)?day|1\s+time\s+(a\s+)?day", re.IGNORECASE)


def _once_daily(text: str) -> list[str] | None:
    if not DAILY_PATTERN.search(text):
        return None
    for pattern, time in DAILY_HINTS:
        if pattern.search(text):
            return [time]
    return [DEFAULT_DAILY_TIME]


def _prn(text: str) -> list[str] | None:
    return [] if PRN_PATTERN.search(text) else None


def _every_n_hours(text: str) -> list[str] | None:
    match = EVERY_N_HOURS_PATTERN.search(text)
    if not match:
        return None
    interval = int(match.group(1))
    if interval <= 0:
        return None
    doses = min(24 // interval, 4)
    if doses == 0:
        return None
    return [_format_clock((6 + i * interval) % 24) for i in range(doses)]


def _times_per_day(text: str) -> list[str] | None:
    match = TIMES_PER_DAY_PATTERN.search(text)
    if not match:
        return None
    frequency = int(match.group(1))
    if frequency in FREQUENCY_TIMES:
        return list(FREQUENCY_TIMES[frequency])
    if frequency <= 0:
        return None
    interval = 24 // frequency
    return [_format_clock((8 + i * interval) % 24) for i in range(min(frequency, 6))]


DOSAGE_RULES: tuple[DosageRule, ...] = (
    DosageRule("clock_times", ScheduleKind.FIXED, _clock_times),
    # Frequency abbreviations
    _keyword_rule(
        "bid",
        r"\bbid\b|twice\s+(a\s+)?daily|twice\s+(a\s+)?day|2\s+times\s+(a\s+)?day",
        TWICE_DAILY,
    ),
    _keyword_rule(
        "tid",
        r"\btid\b|three\s+times\s+(a\s+)?daily|three\s+times\s+(a\s+)?day|3\s+times\s+(a\s+)?day",
        THREE_TIMES_DAILY,
    ),
    _keyword_rule(
        "qid",
        r"\bqid\b|four\s+times\s+(a\s+)?daily|four\s+times\s+(a\s+)?day|4\s+times\s+(a\s+)?day",
        FOUR_TIMES_DAILY,
    ),
    _keyword_rule("q6h", r"\bq6h\b|every\s+6\s+hours", ["06:00", "12:00", "18:00", "00:00"]),
    _keyword_rule("q8h", r"\bq8h\b|every\s+8\s+hours", ["06:00", "14:00", "22:00"]),
    _keyword_rule("q12h", r"\bq12h\b|every\s+12\s+hours", TWICE_DAILY),
    DosageRule("once_daily", ScheduleKind.FIXED, _once_daily),
    # Meal-relative
    _keyword_rule("before_breakfast", r"before\s+breakfast|ac\s+breakfast", ["07:30"]),
    _keyword_rule("with_breakfast", r"with\s+breakfast|at\s+breakfast", ["08:00"]),
    _keyword_rule("after_breakfast", r"after\s+breakfast|pc\s+breakfast", ["08:30"]),
    _keyword_rule("before_lunch", r"before\s+lunch|ac\s+lunch", ["11:30"]),
    _keyword_rule("with_lunch", r"with\s+lunch|at\s+lunch", ["12:00"]),
    _keyword_rule("after_lunch", r"after\s+lunch|pc\s+lunch", ["12:30"]),
    _keyword_rule(
        "before_dinner",
        r"before\s+dinner|ac\s+dinner|before\s+supper|ac\s+supper",
        ["17:30"],
    ),
    _keyword_rule(
        "with_dinner",
        r"with\s+dinner|at\s+dinner|with\s+supper|at\s+supper",
        ["18:00"],
    ),
    _keyword_rule(
        "after_dinner",
        r"after\s+dinner|pc\s+dinner|after\s+supper|pc\s+supper",
        ["18:30"],
    ),
    _keyword_rule("bedtime", r"bedtime|\bhs\b|at\s+night", ["21:00"]),
    DosageRule("prn", ScheduleKind.PRN, _prn),
    DosageRule("every_n_hours", ScheduleKind.FIXED, _every_n_hours),
    DosageRule("times_per_day", ScheduleKind.FIXED, _times_per_day),
)


def normalize_schedule(times: list[str]) -> list[str]:
    return sorted(set(times))


def resolve_schedule(text: Any, rules: tuple[DosageRule, ...] = DOSAGE_RULES) -> ResolvedSchedule:
    """Run the rule cascade and report which rule produced the schedule."""
    if not isinstance(text, str) or not text.strip():
        return ResolvedSchedule()
    lowered = text.lower()
    for rule in rules:
        times = rule.resolve(lowered)
        if times is not None:
            return ResolvedSchedule(
                times=normalize_schedule(times),
                kind=rule.kind,
                rule=rule.name,
            )
    return ResolvedSchedule()


def resolve_schedule_from_text(text: Any) -> list[str]:
    """Daily clock times for a free-text dosage instruction."""
    return resolve_schedule(text).times


def resolve_schedule_from_timing(timing: Any) -> list[str]:
    """Daily clock times for a structured FHIR Timing object.

    All sources present in the object contribute; the result is their union.
    """
    if not isinstance(timing, dict):
        return []

    times: list[str] = []
    repeat = timing.get("repeat")
    if isinstance(repeat, dict):
        when = repeat.get("when")
        if isinstance(when, list):
            for code in when:
                times.extend(WHEN_CODE_TIMES.get(code, []) if isinstance(code, str) else [])

        time_of_day = repeat.get("timeOfDay")
        if isinstance(time_of_day, list):
            for value in time_of_day:
                if isinstance(value, str) and re.match(r"^\d{2}:\d{2}", value):
                    times.append(value[:5])

        frequency = repeat.get("frequency")
        if isinstance(frequency, int) and repeat.get("period") == 1 and repeat.get("periodUnit") == "d":
            times.extend(FREQUENCY_TIMES.get(frequency, []))

    code = timing.get("code")
    if isinstance(code, dict) and isinstance(code.get("coding"), list):
        for coding in code["coding"]:
            value = coding.get("code") if isinstance(coding, dict) else None
            if isinstance(value, str):
                times.extend(TIMING_CODE_TIMES.get(value.upper(), []))

    return normalize_schedule(times)


def _dosage_instructions(medication_request: Any) -> list[dict]:
    if not isinstance(medication_request, dict):
        return []
    resource = medication_request.get("resource", medication_request)
    instructions = resource.get("dosageInstruction") if isinstance(resource, dict) else None
    if not isinstance(instructions, list):
        return []
    return [i for i in instructions if isinstance(i, dict)]


def dosage_text(medication_request: Any) -> str:
    """Free-text dosage instructions of a MedicationRequest, joined."""
    texts = [i.get("text") for i in _dosage_instructions(medication_request)]
    return " ".join(t.strip() for t in texts if isinstance(t, str) and t.strip())


def resolve_medication_schedule(medication_request: Any) -> list[str]:
    """Union of schedules across a MedicationRequest's dosage instructions.

    Each instruction uses its Timing when that yields times, otherwise its
    free text.
    """
    times: list[str] = []
    for instruction in _dosage_instructions(medication_request):
        from_timing = resolve_schedule_from_timing(instruction.get("timing"))
        times.extend(from_timing or resolve_schedule_from_text(instruction.get("text")))
    return normalize_schedule(times)


# --- Clock helpers ---


def _minutes(time: str) -> int:
    hour, _, minute = time.partition(":")
    return int(hour) * 60 + int(minute or 0)


def _clock_string(now: datetime | str) -> str:
    if isinstance(now, datetime):
        return _format_clock(now.hour, now.minute)
    return now[:5]


def _clock_minutes(now: datetime | str) -> float:
    if isinstance(now, datetime):
        return now.hour * 60 + now.minute + now.second / 60
    return _minutes(now[:5])


def format_for_display(time: str) -> str:
    """'21:00' -> '9:00 PM'."""
    hour_str, _, minute = time.partition(":")
    hour = int(hour_str)
    minute = minute or "00"

    period = "PM" if hour >= 12 else "AM"
    if hour > 12:
        hour -= 12
    if hour == 0:
        hour = 12
    return f"{hour}:{minute} {period}"


def next_dose_time(schedule: list[str], now: datetime | str) -> NextDose | None:
    """First scheduled time after ``now``; wraps to tomorrow's first dose."""
    if not schedule:
        return None
    ordered = sorted(schedule)
    current = _clock_string(now)
    for time in ordered:
        if time > current:
            return NextDose(time=time, is_today=True)
    return NextDose(time=ordered[0], is_today=False)


def is_overdue(scheduled_time: str, now: datetime | str, grace_minutes: int = 30) -> bool:
    """True when ``scheduled_time`` passed more than ``grace_minutes`` ago today.

    Only times of day are compared; a dose later in the clock day is never
    overdue, even if it belonged to yesterday.
    """
    elapsed = _clock_minutes(now) - _minutes(scheduled_time)
    if elapsed <= 0:
        return False
    return elapsed > grace_minutes


def adherence_rate(taken: int, missed: int) -> int:
    """Percentage of recorded doses that were taken.

    With nothing recorded the rate is 100 (vacuously adherent). Halves round
    up.
    """
    total = taken + missed
    if total == 0:
        return 100
    return math.floor(taken / total * 100 + 0.5)


def adherence_from_events(events: list[DoseEvent]) -> int:
    taken = sum(1 for e in events if e.taken)
    return adherence_rate(taken, len(events) - taken)


def is_complex_schedule(schedule: list[str]) -> bool:
    """Flag schedules likely to hurt adherence.

    More than three doses, or gaps between consecutive doses that stray more
    than an hour from the average gap.
    """
    if len(schedule) > 3:
        return True
    if len(schedule) < 2:
        return False

    intervals = [
        _minutes(schedule[i]) - _minutes(schedule[i - 1])
        for i in range(1, len(schedule))
    ]
    mean = sum(intervals) / len(intervals)
    return any(abs(interval - mean) > 60 for interval in intervals)


def generate_reminder_message(
    medication_name: str,
    schedule_time: str,
    instructions: str | None = None,
) -> str:
    message = f"Time to take {medication_name} at {format_for_display(schedule_time)}"
    if instructions:
        if re.search(r"with food", instructions, re.IGNORECASE):
            message += " - Take with food"
        elif re.search(r"empty stomach", instructions, re.IGNORECASE):
            message += " - Take on empty stomach"
        elif re.search(r"with water", instructions, re.IGNORECASE):
            message += " - Take with full glass of water"
    return message
