"""Relative reminder offsets and mention tokens."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Iterable, List, Tuple

from schedbot.domain.errors import InvalidMentionFormat, InvalidTimingFormat

MAX_TIMINGS = 10
MAX_MENTIONS = 20
MAX_OFFSET = timedelta(days=3650)

TIMING_PATTERN = re.compile(r"^(\d+)([smhdwMy])$")
MENTION_PATTERN = re.compile(r"^@(?:everyone|here|role:\w+|user:\w+)$")

# M and y are fixed-length: 30 and 365 days
_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
    "M": 30 * 24 * 60 * 60,
    "y": 365 * 24 * 60 * 60,
}


def parse_timing(token: str) -> Tuple[int, str]:
    if not isinstance(token, str):
        raise InvalidTimingFormat(token)
    match = TIMING_PATTERN.match(token.strip())
    if match is None:
        raise InvalidTimingFormat(token)
    return int(match.group(1)), match.group(2)


def to_duration(token: str) -> timedelta:
    value, unit = parse_timing(token)
    seconds = value * _UNIT_SECONDS[unit]
    if seconds > MAX_OFFSET.total_seconds():
        raise InvalidTimingFormat(token)
    return timedelta(seconds=seconds)


def trigger_instant(deadline: datetime, token: str) -> datetime:
    try:
        return deadline - to_duration(token)
    except OverflowError:
        raise InvalidTimingFormat(token) from None


def is_due(deadline: datetime, token: str, now: datetime) -> bool:
    return now >= trigger_instant(deadline, token)


def stale_grace(token: str) -> timedelta:
    """How late a reminder may still be sent after its trigger instant."""

    value, unit = parse_timing(token)
    if unit == "h":
        return max(timedelta(hours=2), timedelta(hours=value * 0.25))
    if unit in {"m", "s"}:
        minutes = value if unit == "m" else value / 60
        return max(timedelta(minutes=30), timedelta(minutes=minutes * 0.5))
    return timedelta(hours=8)


def is_stale(deadline: datetime, token: str, now: datetime) -> bool:
    return now - trigger_instant(deadline, token) > stale_grace(token)


def validate_timings(tokens: Iterable[str]) -> List[str]:
    """Return normalized, de-duplicated tokens ordered from the earliest trigger."""

    seen: List[str] = []
    for token in tokens:
        to_duration(token)
        normalized = token.strip()
        if normalized not in seen:
            seen.append(normalized)
    if len(seen) > MAX_TIMINGS:
        raise ValueError(f"At most {MAX_TIMINGS} reminder timings are allowed")
    return sorted(seen, key=to_duration, reverse=True)


def validate_mention(token: str) -> str:
    if not isinstance(token, str) or MENTION_PATTERN.match(token.strip()) is None:
        raise InvalidMentionFormat(token)
    return token.strip()


def validate_mentions(tokens: Iterable[str]) -> List[str]:
    result: List[str] = []
    for token in tokens:
        normalized = validate_mention(token)
        if normalized not in result:
            result.append(normalized)
    if len(result) > MAX_MENTIONS:
        raise ValueError(f"At most {MAX_MENTIONS} mentions are allowed")
    return result


def humanize(token: str) -> str:
    value, unit = parse_timing(token)
    names = {
        "s": "second",
        "m": "minute",
        "h": "hour",
        "d": "day",
        "w": "week",
        "M": "month",
        "y": "year",
    }
    label = names[unit]
    return f"{value} {label}" if value == 1 else f"{value} {label}s"


__all__ = [
    "MAX_TIMINGS",
    "MAX_MENTIONS",
    "MAX_OFFSET",
    "TIMING_PATTERN",
    "MENTION_PATTERN",
    "parse_timing",
    "to_duration",
    "trigger_instant",
    "is_due",
    "is_stale",
    "stale_grace",
    "validate_timings",
    "validate_mention",
    "validate_mentions",
    "humanize",
]
