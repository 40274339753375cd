"""
Scheduling primitives for backup targets.

Everything here is a pure function of its inputs: interval arithmetic,
parsing of ``ls -l --full-time`` style listings, and matching listing
entries against a strftime naming pattern.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, NamedTuple, Optional

from dateutil.relativedelta import relativedelta


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


MATCH_WINDOW_SECONDS = 60 * 60

_UNITS = {
    "M": "months",
    "month": "months",
    "months": "months",
    "w": "weeks",
    "week": "weeks",
    "weeks": "weeks",
    "d": "days",
    "day": "days",
    "days": "days",
    "h": "hours",
    "hour": "hours",
    "hours": "hours",
    "m": "minutes",
    "minute": "minutes",
    "minutes": "minutes",
    "s": "seconds",
    "second": "seconds",
    "seconds": "seconds",
}

_INTERVAL_RE = re.compile(r"([0-9]+)\s*([A-Za-z]+)")

_LISTING_RE = re.compile(
    r"^(?P<mode>[-bcdlpsDrwxsStT]{10})[.+@]?\s+"
    r"[0-9]+\s+\S+\s+\S+\s+[0-9]+\s+"
    r"(?P<date>[0-9]{4}-[0-9]{2}-[0-9]{2} [0-9]{2}:[0-9]{2}:[0-9]{2})"
    r"(?:\.(?P<fraction>[0-9]+))?\s+"
    r"(?P<offset>[+-][0-9]{4})\s"
    r"(?P<name>.+)$"
)


@dataclass(frozen=True)
class Interval:
    count: int
    unit: str  # one of months, weeks, days, hours, minutes, seconds

    def step_back(self, moment: datetime) -> datetime:
        if self.unit == "months":
            return moment - relativedelta(months=self.count)
        if self.unit in ("weeks", "days"):
            # Wall-clock arithmetic: tzinfo is kept, only the calendar fields move.
            return moment - timedelta(**{self.unit: self.count})

        delta = timedelta(**{self.unit: self.count})
        if moment.tzinfo is None:
            return moment - delta
        as_utc = moment.astimezone(timezone.utc) - delta
        return as_utc.astimezone(moment.tzinfo)


def parse_interval(expression: str) -> Interval:
    match = _INTERVAL_RE.fullmatch(expression.strip())
    if match is None:
        raise ConfigurationError(f"Invalid interval expression: {expression!r}")
    count, unit = match.groups()
    if unit not in _UNITS:
        raise ConfigurationError(
            f"Invalid interval unit {unit!r} in {expression!r}. "
            f"Use one of: {', '.join(_UNITS)}."
        )
    return Interval(count=int(count), unit=_UNITS[unit])


def offset_by_interval(moment: datetime, expression: str) -> datetime:
    """Return ``moment`` stepped back by the interval ``expression``."""
    return parse_interval(expression).step_back(moment)


class ListingEntry(NamedTuple):
    name: str
    modified_at: datetime


def _parse_listing_timestamp(date: str, fraction: Optional[str], offset: str) -> datetime:
    # datetime only keeps microseconds; ls prints nanoseconds.
    micros = (fraction or "0")[:6].ljust(6, "0")
    parsed = datetime.strptime(f"{date}.{micros} {offset}", "%Y-%m-%d %H:%M:%S.%f %z")
    return parsed.astimezone(timezone.utc)


def parse_listing(raw: str) -> List[ListingEntry]:
    """
    Parse ``ls -l --full-time`` output into ``(name, modified_at)`` entries.

    Lines that do not look like a long-format entry (``total`` lines, headers,
    blanks) are skipped. The input order is preserved; callers depend on the
    listing tool having sorted entries newest first.
    """
    entries: List[ListingEntry] = []
    for line in raw.splitlines():
        match = _LISTING_RE.match(line)
        if match is None:
            continue
        name = match.group("name")
        if match.group("mode").startswith("l") and " -> " in name:
            name = name.split(" -> ", 1)[0]
        modified_at = _parse_listing_timestamp(
            match.group("date"), match.group("fraction"), match.group("offset")
        )
        entries.append(ListingEntry(name, modified_at))
    return entries


def check_naming_pattern(pattern: str) -> None:
    """Raise ConfigurationError unless ``pattern`` renders a bare file name that varies with time."""
    if "/" in pattern:
        raise ConfigurationError(f"Naming pattern {pattern!r} must not contain a path separator.")
    if "%" not in pattern.replace("%%", ""):
        raise ConfigurationError(f"Naming pattern {pattern!r} contains no date directive.")


def render_name(pattern: str, moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.replace(microsecond=0).strftime(pattern)


def matches(name: str, reference: datetime, pattern: str) -> bool:
    """
    Check whether ``name`` is ``pattern`` rendered at some second in the hour
    leading up to ``reference``.

    The name of a backup is computed before the archive is written, encrypted
    and transferred, so the modification time reported by the listing trails
    the instant the name was rendered at.
    """
    start = reference.replace(microsecond=0)
    for offset in range(MATCH_WINDOW_SECONDS):
        if render_name(pattern, start - timedelta(seconds=offset)) == name:
            return True
    return False


def find_most_recent_matching(
    entries: Iterable[ListingEntry], pattern: str
) -> Optional[ListingEntry]:
    for entry in entries:
        if matches(entry.name, entry.modified_at, pattern):
            return entry
    return None


def filter_matching(entries: Iterable[ListingEntry], pattern: str) -> List[ListingEntry]:
    return [entry for entry in entries if matches(entry.name, entry.modified_at, pattern)]
