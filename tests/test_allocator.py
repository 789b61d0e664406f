import unittest
from datetime import datetime, timedelta, timezone

from timeslip.allocator import (
    allocate,
    build_issue_catalogue,
    commits_from_payload,
    normalize_commit_instant,
    select_issues,
)
from timeslip.models import Commit, PreferencesConfig


def _preferences(**overrides: object) -> PreferencesConfig:
    data = {
        "working_day_start_time": "09:00",
        "working_day_end_time": "18:00",
        "minimum_duration_minutes": 60,
        "timezone": "UTC",
    }
    data.update(overrides)
    return PreferencesConfig.from_dict(data)


def _catalogue(*keys: str) -> dict:
    return build_issue_catalogue(
        {"key": key, "summary": f"Summary {key}", "project_name": "Alpha"} for key in keys
    )


class AllocateTests(unittest.TestCase):
    def test_two_issues_share_the_working_day(self) -> None:
        commits = commits_from_payload(
            [
                {"createdAt": "2024-03-04T10:00:00Z", "issueKeys": ["ABC-1"]},
                {"createdAt": "2024-03-04T15:00:00Z", "issueKeys": ["ABC-2"]},
            ]
        )

        drafts = allocate(commits, _catalogue("ABC-1", "ABC-2"), _preferences(), "Dana", "acc-1")

        self.assertEqual([draft.issue_key for draft in drafts], ["ABC-1", "ABC-2"])
        self.assertEqual([draft.time_spent_seconds for draft in drafts], [16200, 16200])
        self.assertEqual(drafts[0].started, "2024-03-04T09:00:00+00:00")
        self.assertEqual(drafts[1].started, "2024-03-04T13:30:00+00:00")
        self.assertEqual(drafts[0].summary, "Summary ABC-1")
        self.assertEqual(drafts[0].project_name, "Alpha")
        self.assertEqual(drafts[0].author_name, "Dana")
        self.assertEqual(drafts[0].author_account_id, "acc-1")

    def test_keeps_busiest_issues_when_minimum_does_not_fit(self) -> None:
        keys = [f"ABC-{index}" for index in range(1, 11)]
        commits = []
        # ABC-1 gets one reference, ABC-10 gets ten.
        for index, key in enumerate(keys, start=1):
            for _ in range(index):
                commits.append(Commit(created_at="2024-03-04T10:00:00Z", issue_keys=[key]))

        drafts = allocate(commits, _catalogue(*keys), _preferences(), "Dana", "acc-1")

        self.assertEqual(len(drafts), 9)
        self.assertNotIn("ABC-1", [draft.issue_key for draft in drafts])
        self.assertEqual(drafts[0].issue_key, "ABC-10")
        self.assertTrue(all(draft.time_spent_seconds == 3600 for draft in drafts))

    def test_entries_never_overlap_or_exceed_the_window(self) -> None:
        keys = ["ABC-1", "ABC-2", "ABC-3", "ABC-4", "ABC-5", "ABC-6", "ABC-7"]
        commits = [Commit(created_at="2024-03-04T11:00:00Z", issue_keys=keys)]

        drafts = allocate(commits, _catalogue(*keys), _preferences(), "Dana", "acc-1")

        self.assertEqual(sum(draft.time_spent_seconds for draft in drafts), 540 * 60)
        for previous, current in zip(drafts, drafts[1:]):
            self.assertLessEqual(previous.end, current.start)
        self.assertEqual(drafts[-1].end, datetime(2024, 3, 4, 18, 0, tzinfo=timezone.utc))
        # 540 / 7 leaves a remainder that goes to the last slot.
        self.assertEqual(drafts[-1].time_spent_seconds, (77 + 1) * 60)

    def test_ignores_uncatalogued_keys_and_normalizes_case(self) -> None:
        commits = [
            Commit(created_at="2024-03-04T10:00:00Z", issue_keys=[" abc-1 ", "ZZZ-9", ""]),
        ]

        drafts = allocate(commits, _catalogue("ABC-1"), _preferences(), "Dana", "acc-1")

        self.assertEqual(len(drafts), 1)
        self.assertEqual(drafts[0].issue_key, "ABC-1")
        self.assertEqual(drafts[0].time_spent_seconds, 540 * 60)

    def test_days_are_grouped_in_configured_timezone(self) -> None:
        commits = [
            Commit(created_at="2024-03-04T23:30:00Z", issue_keys=["ABC-1"]),
            Commit(created_at="2024-03-05T10:00:00Z", issue_keys=["ABC-2"]),
        ]

        drafts = allocate(
            commits,
            _catalogue("ABC-1", "ABC-2"),
            _preferences(timezone="Europe/Berlin"),
            "Dana",
            "acc-1",
        )

        # 23:30 UTC is already the next day in Berlin, so both issues share 5 March.
        self.assertEqual(len(drafts), 2)
        self.assertEqual(drafts[0].started, "2024-03-05T09:00:00+01:00")
        self.assertEqual(drafts[1].started, "2024-03-05T13:30:00+01:00")

    def test_unparseable_commit_dates_are_skipped(self) -> None:
        commits = [
            Commit(created_at="not a date", issue_keys=["ABC-1"]),
            Commit(created_at=None, issue_keys=["ABC-1"]),
        ]

        self.assertEqual(allocate(commits, _catalogue("ABC-1"), _preferences(), "Dana", "acc-1"), [])

    def test_out_of_range_commit_dates_are_skipped(self) -> None:
        commits = [
            Commit(created_at="0001-01-01T00:00:00+05:00", issue_keys=["ABC-1"]),
            Commit(created_at="9999-12-31T23:00:00+00:00", issue_keys=["ABC-2"]),
            Commit(created_at="2024-03-04T10:00:00Z", issue_keys=["ABC-1"]),
        ]

        drafts = allocate(
            commits,
            _catalogue("ABC-1", "ABC-2"),
            _preferences(timezone="Pacific/Kiritimati"),
            "Dana",
            "acc-1",
        )

        self.assertEqual([draft.issue_key for draft in drafts], ["ABC-1"])
        self.assertEqual(drafts[0].started, "2024-03-05T09:00:00+14:00")
        self.assertIsNone(normalize_commit_instant("0001-01-01T00:00:00+05:00"))

    def test_window_shorter_than_minimum_yields_nothing(self) -> None:
        commits = [Commit(created_at="2024-03-04T10:00:00Z", issue_keys=["ABC-1"])]
        preferences = _preferences(working_day_end_time="09:30")

        self.assertEqual(allocate(commits, _catalogue("ABC-1"), preferences, "Dana", "acc-1"), [])

    def test_each_day_starts_from_the_working_day_start(self) -> None:
        commits = [
            Commit(created_at="2024-03-04T10:00:00Z", issue_keys=["ABC-1"]),
            Commit(created_at="2024-03-05T10:00:00Z", issue_keys=["ABC-1", "ABC-2"]),
        ]

        drafts = allocate(commits, _catalogue("ABC-1", "ABC-2"), _preferences(), "Dana", "acc-1")

        starts = [draft.start for draft in drafts]
        self.assertEqual(starts[0], datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(starts[1], datetime(2024, 3, 5, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(starts[2], starts[1] + timedelta(minutes=270))


class SelectIssuesTests(unittest.TestCase):
    def test_keeps_everything_when_share_meets_minimum(self) -> None:
        self.assertEqual(select_issues({"A-1": 1, "A-2": 5}, 540, 60), ["A-1", "A-2"])

    def test_ties_keep_grouping_order(self) -> None:
        counts = {"A-1": 2, "A-2": 3, "A-3": 2, "A-4": 2}
        self.assertEqual(select_issues(counts, 180, 60), ["A-2", "A-1", "A-3"])

    def test_empty_counts(self) -> None:
        self.assertEqual(select_issues({}, 540, 60), [])


class PayloadTests(unittest.TestCase):
    def test_commits_from_payload_skips_malformed_rows(self) -> None:
        commits = commits_from_payload(
            [
                {"created_at": "2024-03-04T10:00:00Z", "issue_keys": ["ABC-1"]},
                {"createdAt": "2024-03-04T11:00:00Z", "issueKeys": "ABC-2"},
                "garbage",
            ]
        )

        self.assertEqual(len(commits), 1)
        self.assertEqual(commits[0].issue_keys, ["ABC-1"])

    def test_normalize_commit_instant_accepts_rfc2822(self) -> None:
        parsed = normalize_commit_instant("Mon, 04 Mar 2024 10:00:00 +0100")
        self.assertEqual(parsed, datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))

    def test_normalize_commit_instant_assumes_utc_without_offset(self) -> None:
        parsed = normalize_commit_instant("2024-03-04T10:00:00")
        self.assertEqual(parsed, datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc))


if __name__ == "__main__":
    unittest.main()
