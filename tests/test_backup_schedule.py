from datetime import datetime, timedelta, timezone

import pytest
from dateutil import tz

from backup_schedule import (
    ConfigurationError,
    Interval,
    ListingEntry,
    check_naming_pattern,
    filter_matching,
    find_most_recent_matching,
    matches,
    offset_by_interval,
    parse_interval,
    parse_listing,
    render_name,
)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize("unit", ["M", "w", "d", "h", "m", "s"])
def test_zero_interval_is_identity(unit: str) -> None:
    now = utc(2000, 7, 1, 12, 30, 15)
    assert offset_by_interval(now, f"0 {unit}") == now
    assert offset_by_interval(now, f"0{unit}") == now


def test_offset_by_interval_month() -> None:
    now = utc(2000, 7, 1)
    assert offset_by_interval(now, "1M") == utc(2000, 6, 1)
    assert offset_by_interval(now, "6month") == utc(2000, 1, 1)
    assert offset_by_interval(now, "10 months") == utc(1999, 9, 1)


def test_offset_by_interval_month_clamps_to_month_end() -> None:
    assert offset_by_interval(utc(2000, 3, 31), "1 month") == utc(2000, 2, 29)
    assert offset_by_interval(utc(2001, 3, 31), "1 month") == utc(2001, 2, 28)
    assert offset_by_interval(utc(2000, 7, 31), "1M") == utc(2000, 6, 30)
    assert offset_by_interval(utc(2000, 5, 31, 8, 15), "3 months") == utc(2000, 2, 29, 8, 15)


def test_offset_by_interval_week() -> None:
    now = utc(2000, 7, 28)
    assert offset_by_interval(now, "1w") == utc(2000, 7, 21)
    assert offset_by_interval(now, "2week") == utc(2000, 7, 14)
    assert offset_by_interval(now, "4 weeks") == utc(2000, 6, 30)


def test_offset_by_interval_day() -> None:
    now = utc(2000, 7, 30)
    assert offset_by_interval(now, "1d") == utc(2000, 7, 29)
    assert offset_by_interval(now, "2day") == utc(2000, 7, 28)
    assert offset_by_interval(now, "30 days") == utc(2000, 6, 30)


def test_offset_by_interval_hour() -> None:
    now = utc(2000, 7, 3)
    assert offset_by_interval(now, "1h") == utc(2000, 7, 2, 23)
    assert offset_by_interval(now, "24hour") == utc(2000, 7, 2)
    assert offset_by_interval(now, "30 hours") == utc(2000, 7, 1, 18)


def test_offset_by_interval_minute() -> None:
    now = utc(2000, 7, 2)
    assert offset_by_interval(now, "1m") == utc(2000, 7, 1, 23, 59)
    assert offset_by_interval(now, "30minute") == utc(2000, 7, 1, 23, 30)
    assert offset_by_interval(now, "90 minutes") == utc(2000, 7, 1, 22, 30)


def test_offset_by_interval_second() -> None:
    now = utc(2000, 7, 2)
    assert offset_by_interval(now, "1s") == utc(2000, 7, 1, 23, 59, 59)
    assert offset_by_interval(now, "30second") == utc(2000, 7, 1, 23, 59, 30)
    assert offset_by_interval(now, "90 seconds") == utc(2000, 7, 1, 23, 58, 30)


def test_days_keep_wall_clock_across_dst_while_hours_do_not() -> None:
    new_york = tz.gettz("America/New_York")
    if new_york is None:
        pytest.skip("no time zone data available")
    # DST started on 2023-03-12 at 02:00 local time.
    now = datetime(2023, 3, 12, 12, 0, tzinfo=new_york)

    assert offset_by_interval(now, "1 day") == datetime(2023, 3, 11, 12, 0, tzinfo=new_york)
    assert offset_by_interval(now, "24 hours") == datetime(2023, 3, 11, 11, 0, tzinfo=new_york)


def test_parse_interval_units() -> None:
    assert parse_interval("3 M") == Interval(3, "months")
    assert parse_interval("3m") == Interval(3, "minutes")
    assert parse_interval(" 12   weeks ") == Interval(12, "weeks")


@pytest.mark.parametrize(
    "expression", ["", "1", "day", "1 fortnight", "-1 day", "1.5h", "1 D", "1 days ago"]
)
def test_parse_interval_rejects_invalid_expressions(expression: str) -> None:
    with pytest.raises(ConfigurationError):
        parse_interval(expression)


def test_parse_listing() -> None:
    raw = """
total 0
drwx------ 1 daniel users 12 2023-03-25 21:43:28.131444555 -0400 .config
drwx------ 1 daniel users 30 2023-03-25 21:51:43.614781911 -0400 .ssh
"""
    assert parse_listing(raw) == [
        ListingEntry(".config", utc(2023, 3, 26, 1, 43, 28, 131444)),
        ListingEntry(".ssh", utc(2023, 3, 26, 1, 51, 43, 614781)),
    ]


def test_parse_listing_skips_noise_and_keeps_order() -> None:
    raw = "\n".join(
        [
            "/srv/backups:",
            "total 12",
            "-rw-r--r-- 1 root root 4096 2024-01-01 10:00:00.000000000 +0000 old.tar.gz",
            "garbage line",
            "-rw-r--r--. 1 root root 2048 2024-01-02 10:00:00.500000000 +0100 name with spaces.tar.gz",
            "lrwxrwxrwx 1 root root 10 2024-01-03 10:00:00.000000000 +0000 latest -> old.tar.gz",
            "",
        ]
    )
    assert parse_listing(raw) == [
        ListingEntry("old.tar.gz", utc(2024, 1, 1, 10)),
        ListingEntry("name with spaces.tar.gz", utc(2024, 1, 2, 9, 0, 0, 500000)),
        ListingEntry("latest", utc(2024, 1, 3, 10)),
    ]


def test_parse_listing_empty() -> None:
    assert parse_listing("") == []
    assert parse_listing("total 0\n") == []


def test_render_name_uses_utc_at_second_resolution() -> None:
    moment = datetime(2024, 5, 6, 9, 8, 7, 654321, tzinfo=tz.tzoffset(None, 2 * 3600))
    assert render_name("backup_%Y-%m-%d_%H:%M:%S.%f", moment) == "backup_2024-05-06_07:08:07.000000"


def test_rendered_name_matches_its_own_instant() -> None:
    pattern = "docs_%Y-%m-%d_%H:%M:%S.tar.gz.gpg"
    moment = utc(2024, 2, 29, 23, 59, 59, 999999)
    name = render_name(pattern, moment)

    assert matches(name, moment, pattern)


def test_matches_tolerates_up_to_an_hour_of_skew() -> None:
    pattern = "docs_%Y-%m-%d_%H:%M:%S"
    rendered_at = utc(2024, 1, 1, 12)
    name = render_name(pattern, rendered_at)

    assert matches(name, rendered_at + timedelta(minutes=59, seconds=59), pattern)
    assert not matches(name, rendered_at + timedelta(hours=1), pattern)
    assert not matches(name, rendered_at - timedelta(seconds=1), pattern)


def test_matches_rejects_foreign_names() -> None:
    reference = utc(2024, 1, 1, 12)
    assert not matches("notes.txt", reference, "docs_%Y-%m-%d_%H:%M:%S")
    assert not matches("docs_2023-01-01_12:00:00", reference, "docs_%Y-%m-%d_%H:%M:%S")


FILES = [
    ListingEntry("a-01", utc(2000, 1, 1)),
    ListingEntry("b-02", utc(2000, 1, 2)),
    ListingEntry("b-03", utc(2000, 1, 3)),
]


def test_find_most_recent_matching() -> None:
    assert find_most_recent_matching(FILES, "a-%d") == FILES[0]
    assert find_most_recent_matching(FILES, "b-%d") == FILES[1]
    assert find_most_recent_matching(FILES, "c-%d") is None


def test_filter_matching_preserves_order() -> None:
    assert filter_matching(FILES, "b-%d") == [FILES[1], FILES[2]]
    assert filter_matching(FILES, "c-%d") == []


@pytest.mark.parametrize("pattern", ["docs_%Y-%m-%d.tar.gz", "%s", "100%%_%H%M%S"])
def test_check_naming_pattern_accepts_dated_file_names(pattern: str) -> None:
    check_naming_pattern(pattern)


@pytest.mark.parametrize(
    "pattern, message",
    [
        ("static.tar", "directive"),
        ("backup%%.tgz", "directive"),
        ("%Y/%m%d_%H%M%S.tgz", "path separator"),
    ],
)
def test_check_naming_pattern_rejects(pattern: str, message: str) -> None:
    with pytest.raises(ConfigurationError, match=message):
        check_naming_pattern(pattern)
