import unittest
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from puppy_tracker.types import Activity, ActivityType, activity_icon, activity_label
from puppy_tracker.views import (
    ActivityFilter,
    date_range_preset,
    filter_activities,
    format_activity_time,
    load_more,
    paginate,
    today_counts,
    weekly_summary,
)

UTC = timezone.utc
NOW = datetime(2025, 3, 10, 15, 5, tzinfo=UTC)


def make(idx, activity_type, when, notes=None):
    return Activity(
        id=f"a{idx}",
        user_id="u1",
        type=activity_type,
        timestamp=when,
        notes=notes,
    )


ACTIVITIES = [
    make(1, ActivityType.POOP, NOW - timedelta(hours=1), "after the walk"),
    make(2, ActivityType.PEE, NOW - timedelta(hours=3)),
    make(3, ActivityType.EAT, NOW - timedelta(days=1), "kibble"),
    make(4, ActivityType.CRY_START, NOW - timedelta(days=2), "crate time"),
    make(5, ActivityType.CRY_STOP, NOW - timedelta(days=2, minutes=-20)),
    make(6, ActivityType.POOP, NOW - timedelta(days=9), "Walk in the park"),
]


class FilterTests(unittest.TestCase):
    def test_empty_filter_matches_everything(self):
        criteria = ActivityFilter()
        self.assertFalse(criteria.active)
        self.assertEqual(filter_activities(ACTIVITIES, criteria, UTC), ACTIVITIES)

    def test_search_matches_notes_and_labels(self):
        by_notes = filter_activities(ACTIVITIES, ActivityFilter(search="WALK"), UTC)
        self.assertEqual([a.id for a in by_notes], ["a1", "a6"])
        by_label = filter_activities(ACTIVITIES, ActivityFilter(search="crying"), UTC)
        self.assertEqual([a.id for a in by_label], ["a4", "a5"])

    def test_date_range_is_inclusive(self):
        criteria = ActivityFilter(
            date_from=date(2025, 3, 8), date_to=date(2025, 3, 9)
        )
        self.assertEqual(
            [a.id for a in filter_activities(ACTIVITIES, criteria, UTC)],
            ["a3", "a4", "a5"],
        )

    def test_predicates_combine_with_and(self):
        search = ActivityFilter(search="walk")
        kind = ActivityFilter(activity_type=ActivityType.POOP)
        recent = ActivityFilter(date_from=date(2025, 3, 5))
        both = ActivityFilter(
            search="walk", activity_type=ActivityType.POOP, date_from=date(2025, 3, 5)
        )
        expected = {
            a.id
            for a in ACTIVITIES
            if all(c.matches(a, UTC) for c in (search, kind, recent))
        }
        combined = filter_activities(ACTIVITIES, both, UTC)
        self.assertEqual({a.id for a in combined}, expected)
        self.assertEqual({a.id for a in combined}, {"a1"})

    def test_narrowing_never_grows_result(self):
        steps = [
            ActivityFilter(),
            ActivityFilter(activity_type=ActivityType.POOP),
            ActivityFilter(activity_type=ActivityType.POOP, search="walk"),
            ActivityFilter(
                activity_type=ActivityType.POOP,
                search="walk",
                date_from=date(2025, 3, 10),
            ),
        ]
        sizes = []
        for criteria in steps:
            result = filter_activities(ACTIVITIES, criteria, UTC)
            self.assertTrue(set(a.id for a in result) <= set(a.id for a in ACTIVITIES))
            sizes.append(len(result))
        self.assertEqual(sizes, sorted(sizes, reverse=True))

    def test_dates_follow_display_timezone(self):
        late = make(9, ActivityType.PEE, datetime(2025, 3, 10, 2, 0, tzinfo=UTC))
        criteria = ActivityFilter(date_from=date(2025, 3, 10))
        self.assertEqual(filter_activities([late], criteria, UTC), [late])
        self.assertEqual(
            filter_activities([late], criteria, ZoneInfo("America/Chicago")), []
        )


class PaginationTests(unittest.TestCase):
    def test_paginate_reports_remaining(self):
        page = paginate(ACTIVITIES, 4)
        self.assertEqual(len(page.items), 4)
        self.assertEqual(page.total, 6)
        self.assertEqual(page.remaining, 2)

    def test_load_more(self):
        self.assertEqual(load_more(20), 40)
        self.assertEqual(paginate(ACTIVITIES, load_more(4)).remaining, 0)


class SummaryTests(unittest.TestCase):
    def test_today_counts(self):
        counts = today_counts(ACTIVITIES, NOW.date(), UTC)
        self.assertEqual(counts[ActivityType.POOP], 1)
        self.assertEqual(counts[ActivityType.PEE], 1)
        self.assertEqual(counts[ActivityType.EAT], 0)

    def test_weekly_summary(self):
        summary = weekly_summary(ACTIVITIES, NOW)
        self.assertEqual(summary.counts[ActivityType.POOP], 1)
        self.assertEqual(summary.counts[ActivityType.CRY_START], 1)
        self.assertNotIn(ActivityType.CRY_STOP, summary.counts)
        self.assertEqual(summary.daily_average_poops, 0.1)

    def test_date_range_preset(self):
        self.assertEqual(
            date_range_preset(7, date(2025, 3, 10)),
            (date(2025, 3, 3), date(2025, 3, 10)),
        )


class FormattingTests(unittest.TestCase):
    def test_relative_days(self):
        self.assertEqual(format_activity_time(NOW, NOW, UTC), "Today, 3:05 PM")
        self.assertEqual(
            format_activity_time(NOW - timedelta(days=1), NOW, UTC),
            "Yesterday, 3:05 PM",
        )
        self.assertEqual(
            format_activity_time(datetime(2025, 3, 4, 0, 30, tzinfo=UTC), NOW, UTC),
            "Mar 4, 12:30 AM",
        )

    def test_every_type_has_label_and_icon(self):
        for activity_type in ActivityType:
            self.assertTrue(activity_label(activity_type))
            self.assertTrue(activity_icon(activity_type))


if __name__ == "__main__":
    unittest.main()
