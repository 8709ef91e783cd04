"""
Daily aggregation tests

Covers local-date bucketing across timezones, minute rounding, top
artist/track selection and determinism of repeated aggregation.
"""
from datetime import date, datetime

import pytest

from listening_insights.aggregation import aggregate_daily, dedupe_events, local_date, resolve_timezone, round_minutes
from listening_insights.errors import ValidationError

from conftest import play, utc


class TestRoundMinutes:
    def test_rounds_half_up(self):
        assert round_minutes(90000) == 2
        assert round_minutes(89999) == 1
        assert round_minutes(30000) == 1
        assert round_minutes(29999) == 0

    def test_exact_minutes(self):
        assert round_minutes(300000) == 5
        assert round_minutes(0) == 0

    def test_sum_of_durations(self):
        durations = [200000, 95000, 40000]  # 335000ms = 5.58 min
        events = [play(f"t{i}", "a", utc(2024, 3, 1, 10, i), d) for i, d in enumerate(durations)]
        [day] = aggregate_daily("u", events, "UTC")
        assert day.minutes == 6
        assert day.track_count == 3


class TestTimezoneBucketing:
    def test_events_around_local_midnight_land_on_separate_days(self):
        # 23:59 and 00:01 in New York (UTC-5 in January) are 04:59 and 05:01 UTC
        late = play("late", "a", utc(2024, 1, 16, 4, 59), duration_ms=240000)
        early = play("early", "b", utc(2024, 1, 16, 5, 1), duration_ms=120000)

        days = aggregate_daily("u", [early, late], "America/New_York")

        assert [d.date for d in days] == [date(2024, 1, 15), date(2024, 1, 16)]
        assert days[0].minutes == 4
        assert days[0].top_track_id == "late"
        assert days[1].minutes == 2
        assert days[1].top_track_id == "early"

    def test_same_utc_day_split_for_eastern_timezone(self):
        # 09:30 and 10:30 UTC fall either side of midnight in Kiritimati (UTC+14)
        first = play("x", "a", utc(2024, 5, 1, 9, 30))
        second = play("y", "a", utc(2024, 5, 1, 10, 30))
        days = aggregate_daily("u", [first, second], "Pacific/Kiritimati")
        assert [d.date for d in days] == [date(2024, 5, 1), date(2024, 5, 2)]

    def test_local_date_handles_dst(self):
        tz = resolve_timezone("Europe/Berlin")
        # 22:30 UTC is 00:30 local during summer time
        assert local_date(utc(2024, 7, 1, 22, 30), tz) == date(2024, 7, 2)
        # but only 23:30 local in winter
        assert local_date(utc(2024, 1, 1, 22, 30), tz) == date(2024, 1, 1)

    def test_naive_datetime_is_treated_as_utc(self):
        tz = resolve_timezone("UTC")
        assert local_date(datetime(2024, 1, 1, 23, 0), tz) == date(2024, 1, 1)

    def test_unknown_timezone_raises(self):
        with pytest.raises(ValidationError):
            aggregate_daily("u", [], "Mars/Olympus_Mons")

    def test_missing_timezone_defaults_to_utc(self):
        [day] = aggregate_daily("u", [play("t", "a", utc(2024, 1, 1, 23, 59))], None)
        assert day.date == date(2024, 1, 1)


class TestTopSelection:
    def test_highest_play_count_wins(self):
        events = [
            play("t1", "a1", utc(2024, 2, 1, 8)),
            play("t2", "a2", utc(2024, 2, 1, 9)),
            play("t2", "a2", utc(2024, 2, 1, 10)),
            play("t1", "a2", utc(2024, 2, 1, 11)),
            play("t2", "a2", utc(2024, 2, 1, 12)),
        ]
        [day] = aggregate_daily("u", events, "UTC")
        assert day.top_track_id == "t2"
        assert day.top_track_name == "Track t2"
        assert day.top_artist_id == "a2"
        assert day.top_artist_name == "Artist a2"

    def test_tie_goes_to_most_recent_play(self):
        events = [
            play("old", "a1", utc(2024, 2, 1, 8)),
            play("new", "a2", utc(2024, 2, 1, 9)),
            play("old", "a1", utc(2024, 2, 1, 10)),
            play("new", "a2", utc(2024, 2, 1, 11)),
        ]
        [day] = aggregate_daily("u", events, "UTC")
        assert day.top_track_id == "new"
        assert day.top_artist_id == "a2"


class TestDeterminism:
    def test_repeated_aggregation_is_identical(self):
        events = [
            play("t1", "a1", utc(2024, 2, 1, 8), 123456),
            play("t2", "a2", utc(2024, 2, 2, 9), 654321),
            play("t1", "a1", utc(2024, 2, 2, 10), 111111),
        ]
        first = aggregate_daily("u", events, "Asia/Tokyo")
        second = aggregate_daily("u", list(reversed(events)), "Asia/Tokyo")
        assert first == second

    def test_duplicate_events_are_counted_once(self):
        event = play("t1", "a1", utc(2024, 2, 1, 8), 60000)
        [day] = aggregate_daily("u", [event, event, event], "UTC")
        assert day.track_count == 1
        assert day.minutes == 1

    def test_dedupe_orders_by_play_time(self):
        later = play("t1", "a", utc(2024, 2, 1, 9))
        earlier = play("t2", "a", utc(2024, 2, 1, 8))
        assert dedupe_events([later, earlier, later]) == [earlier, later]

    def test_empty_input_produces_no_rows(self):
        assert aggregate_daily("u", [], "UTC") == []
