#!/usr/bin/env python3
"""
Unit tests for lifecycle.py - issue records, timeline normalization and aggregation
"""
# /// script
# requires-python = ">=3.8"
# dependencies = [
#     "requests",
#     "pytest",
# ]
# ///

import os
import sys
import unittest
from datetime import datetime, timezone
from unittest.mock import Mock

# Add parent directory to path to import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from github_client import UpstreamError
from lifecycle import (
    BoardNameCache,
    IssueRecord,
    LookupMiss,
    TimelineEvent,
    aggregate_lifecycle,
    detect_issue_type,
    issue_record_from_api,
    normalize_graphql_event,
    normalize_rest_event,
    pull_request_from_api,
    rebuild_current_placements,
    review_from_api,
)


def ts(day, hour=0, month=1, year=2025):
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def make_record(**overrides):
    values = dict(org="acme", repo="web", number=42, title="Checkout fails", url="https://github.com/acme/web/issues/42",
                  state="open", creator="alice", assignees=("bob",), created_at=ts(1))
    values.update(overrides)
    return IssueRecord(**values)


def moved(day, status, board_id="900", board_name="Delivery", hour=0):
    return TimelineEvent(kind='moved', at=ts(day, hour), actor="bob", board_id=board_id,
                         board_name=board_name, to_stage=status)


class TestIssueType(unittest.TestCase):

    def test_structured_type_wins(self):
        issue_type, is_bug = detect_issue_type({"type": {"name": "Feature"}, "labels": [{"name": "bug"}]})
        self.assertEqual(issue_type, "feature")
        self.assertFalse(is_bug)

    def test_structured_bug_type(self):
        self.assertEqual(detect_issue_type({"type": {"name": "Bug"}}), ("bug", True))

    def test_label_heuristics(self):
        cases = [
            ([{"name": "bug"}], ("bug", True)),
            ([{"name": "New Feature"}], ("feature", False)),
            ([{"name": "refactoring"}], ("chore", False)),
            ([{"name": "chore"}], ("chore", False)),
            ([{"name": "Documentation"}], ("docs", False)),
            ([{"name": "help wanted"}], ("task", False)),
            ([], ("task", False)),
        ]
        for labels, expected in cases:
            with self.subTest(labels=labels):
                self.assertEqual(detect_issue_type({"labels": labels}), expected)

    def test_bug_label_sets_flag_even_after_other_type(self):
        issue_type, is_bug = detect_issue_type({"labels": [{"name": "feature"}, {"name": "bug"}]})
        self.assertEqual(issue_type, "feature")
        self.assertTrue(is_bug)


class TestIssueRecord(unittest.TestCase):

    def test_from_api(self):
        raw = {
            "number": 42,
            "title": "Checkout fails",
            "html_url": "https://github.com/acme/web/issues/42",
            "state": "closed",
            "user": {"login": "alice"},
            "assignees": [{"login": "bob"}, {"login": "carol"}],
            "created_at": "2025-01-01T09:30:00Z",
            "closed_at": "2025-01-15T12:00:00Z",
            "labels": [{"name": "bug"}],
        }

        record = issue_record_from_api("acme", "web", raw)

        self.assertEqual(record.id, "acme/web#42")
        self.assertEqual(record.assignees, ("bob", "carol"))
        self.assertEqual(record.created_at, datetime(2025, 1, 1, 9, 30, tzinfo=timezone.utc))
        self.assertEqual(record.closed_at, datetime(2025, 1, 15, 12, tzinfo=timezone.utc))
        self.assertTrue(record.is_bug)
        self.assertEqual(record.type, "bug")

    def test_record_is_immutable(self):
        record = make_record()
        with self.assertRaises(Exception):
            record.state = "closed"


class TestNormalization(unittest.TestCase):

    def test_rest_status_event(self):
        event = normalize_rest_event({"event": "closed", "created_at": "2025-01-15T00:00:00Z",
                                      "actor": {"login": "dave"}})
        self.assertEqual(event.kind, "closed")
        self.assertEqual(event.actor, "dave")
        self.assertEqual(event.at, ts(15))

    def test_rest_legacy_card_event(self):
        event = normalize_rest_event({
            "event": "moved_columns_in_project",
            "created_at": "2025-01-05T00:00:00Z",
            "actor": {"login": "bob"},
            "project_card": {"id": 1, "column_id": 77, "project_id": 300,
                             "column_name": "In Progress", "previous_column_name": "Backlog"},
        })
        self.assertEqual(event.scheme, "legacy")
        self.assertEqual(event.kind, "moved")
        self.assertEqual(event.column_id, 77)
        self.assertEqual(event.board_id, "300")
        self.assertEqual(event.to_stage, "In Progress")
        self.assertEqual(event.from_stage, "Backlog")

    def test_rest_irrelevant_events_are_ignored(self):
        self.assertIsNone(normalize_rest_event({"event": "labeled", "created_at": "2025-01-05T00:00:00Z"}))
        self.assertIsNone(normalize_rest_event({"event": "commented"}))

    def test_graphql_status_change(self):
        event = normalize_graphql_event({
            "__typename": "ProjectV2ItemStatusChangedEvent",
            "createdAt": "2025-01-10T00:00:00Z",
            "actor": {"login": "bob"},
            "project": {"fullDatabaseId": "12345", "title": "Delivery"},
            "status": "In Review",
            "previousStatus": "In Progress",
        })
        self.assertEqual(event.scheme, "modern")
        self.assertEqual(event.kind, "moved")
        self.assertEqual(event.board_id, "12345")
        self.assertEqual(event.board_name, "Delivery")
        self.assertEqual(event.to_stage, "In Review")
        self.assertEqual(event.from_stage, "In Progress")

    def test_graphql_added_and_removed_have_no_status(self):
        for typename, kind in [("AddedToProjectV2Event", "added"), ("RemovedFromProjectV2Event", "removed")]:
            event = normalize_graphql_event({"__typename": typename, "createdAt": "2025-01-02T00:00:00Z",
                                             "project": {"fullDatabaseId": "1", "title": "Delivery"}})
            self.assertEqual(event.kind, kind)
            self.assertEqual(event.to_stage, "")

    def test_graphql_event_without_project_is_dropped(self):
        self.assertIsNone(normalize_graphql_event({"__typename": "AddedToProjectV2Event",
                                                   "createdAt": "2025-01-02T00:00:00Z", "project": None}))


class TestAggregation(unittest.TestCase):

    def test_status_history_seeded_with_opened(self):
        record = make_record()

        lifecycle = aggregate_lifecycle(record, [])

        self.assertEqual(len(lifecycle.status_history), 1)
        first = lifecycle.status_history[0]
        self.assertEqual(first.type, "opened")
        self.assertEqual(first.at, record.created_at)
        self.assertEqual(first.actor, "alice")

    def test_events_are_sorted_and_deduplicated(self):
        """Out-of-order, duplicated input from two feeds becomes one ordered history"""
        events = [
            TimelineEvent(kind='closed', at=ts(15), actor="dave", scheme='status'),
            moved(10, "In Review"),
            moved(5, "In Progress"),
            moved(10, "In Review"),
            TimelineEvent(kind='closed', at=ts(15), actor="dave", scheme='status'),
        ]

        lifecycle = aggregate_lifecycle(make_record(), events)

        self.assertEqual([e.to_stage for e in lifecycle.board_history], ["In Progress", "In Review"])
        self.assertEqual([e.type for e in lifecycle.status_history], ["opened", "closed"])
        self.assertEqual(lifecycle.unmatched_closes, 0)

    def test_status_change_sorts_before_board_move_on_tie(self):
        events = [moved(15, "Done"), TimelineEvent(kind='closed', at=ts(15), scheme='status')]

        lifecycle = aggregate_lifecycle(make_record(), events)

        self.assertEqual(lifecycle.status_history[-1].type, "closed")
        self.assertEqual(lifecycle.board_history[0].to_stage, "Done")

    def test_first_closer_is_committer(self):
        events = [
            TimelineEvent(kind='closed', at=ts(5), actor="first", scheme='status'),
            TimelineEvent(kind='reopened', at=ts(6), actor="alice", scheme='status'),
            TimelineEvent(kind='closed', at=ts(9), actor="second", scheme='status'),
        ]

        lifecycle = aggregate_lifecycle(make_record(), events)

        self.assertEqual(lifecycle.committer, "first")
        self.assertEqual([e.type for e in lifecycle.status_history], ["opened", "closed", "reopened", "closed"])

    def test_close_without_reopen_is_tolerated_and_counted(self):
        events = [
            TimelineEvent(kind='closed', at=ts(5), actor="a", scheme='status'),
            TimelineEvent(kind='closed', at=ts(7), actor="b", scheme='status'),
        ]

        lifecycle = aggregate_lifecycle(make_record(), events)

        self.assertEqual(len(lifecycle.status_history), 3)
        self.assertEqual(lifecycle.unmatched_closes, 1)

    def test_current_placements(self):
        events = [
            TimelineEvent(kind='added', at=ts(2), board_id="1", board_name="Delivery"),
            moved(3, "Ready", board_id="1"),
            TimelineEvent(kind='added', at=ts(2), board_id="2", board_name="Roadmap"),
            TimelineEvent(kind='removed', at=ts(4), board_id="2", board_name="Roadmap"),
        ]

        lifecycle = aggregate_lifecycle(make_record(), events)

        self.assertEqual(len(lifecycle.board_history), 4)
        self.assertEqual(len(lifecycle.current_placements), 1)
        placement = lifecycle.current_placements[0]
        self.assertEqual(placement.board_id, "1")
        self.assertEqual(placement.status, "Ready")

    def test_rebuild_current_placements_matches_aggregation(self):
        events = [
            TimelineEvent(kind='added', at=ts(2), board_id="1", board_name="Delivery"),
            moved(3, "Ready", board_id="1"),
            moved(6, "In Progress", board_id="1"),
            TimelineEvent(kind='added', at=ts(2), board_id="2", board_name="Roadmap"),
            TimelineEvent(kind='removed', at=ts(4), board_id="2", board_name="Roadmap"),
        ]

        lifecycle = aggregate_lifecycle(make_record(), events)

        self.assertEqual(rebuild_current_placements(lifecycle.board_history), lifecycle.current_placements)


class TestBoardNameCache(unittest.TestCase):

    def setUp(self):
        self.fetch_column = Mock()
        self.fetch_board = Mock(return_value={"id": 300, "name": "Delivery"})
        self.cache = BoardNameCache(self.fetch_column, self.fetch_board)

    def legacy_event(self, day, column_id=77):
        return TimelineEvent(kind='moved', at=ts(day), actor="bob", scheme='legacy', column_id=column_id)

    def test_legacy_column_is_resolved(self):
        self.fetch_column.return_value = {"id": 77, "name": "In Progress",
                                          "project_url": "https://api.github.com/projects/300"}

        lifecycle = aggregate_lifecycle(make_record(), [self.legacy_event(5)], self.cache)

        event = lifecycle.board_history[0]
        self.assertEqual(event.board_id, "300")
        self.assertEqual(event.board_name, "Delivery")
        self.assertEqual(event.to_stage, "In Progress")

    def test_failed_column_lookup_is_recorded_and_cached(self):
        """A missing column is recorded with empty names; the miss is not fetched twice"""
        self.fetch_column.side_effect = UpstreamError(404, "https://api.github.com/projects/columns/77", "Not Found")

        lifecycle = aggregate_lifecycle(make_record(), [self.legacy_event(5), self.legacy_event(8)], self.cache)

        self.assertEqual(len(lifecycle.board_history), 2)
        for event in lifecycle.board_history:
            self.assertEqual(event.board_name, "")
            self.assertEqual(event.board_id, "")
        self.assertEqual(self.fetch_column.call_count, 1)
        self.assertEqual(self.cache.lookups, 1)

    def test_cached_miss_raises_lookup_miss(self):
        self.fetch_column.side_effect = UpstreamError(404, "url", "Not Found")

        with self.assertRaises(LookupMiss):
            self.cache.resolve_column(77)
        with self.assertRaises(LookupMiss):
            self.cache.resolve_column(77)
        self.assertEqual(self.fetch_column.call_count, 1)

    def test_cache_hit_across_issues(self):
        self.fetch_column.return_value = {"id": 77, "name": "Ready", "project_id": 300}

        aggregate_lifecycle(make_record(number=1), [self.legacy_event(5)], self.cache)
        aggregate_lifecycle(make_record(number=2), [self.legacy_event(6)], self.cache)

        self.assertEqual(self.fetch_column.call_count, 1)
        self.assertEqual(self.fetch_board.call_count, 1)

    def test_injected_backing_is_used(self):
        backing = {('column', 77): {"name": "QA", "project_id": 5}, ('board', '5'): {"name": "Ops"}}
        cache = BoardNameCache(self.fetch_column, self.fetch_board, backing=backing)

        self.assertEqual(cache.resolve_column(77), ("QA", "5"))
        self.assertEqual(cache.resolve_board("5"), "Ops")
        self.fetch_column.assert_not_called()
        self.fetch_board.assert_not_called()


class TestPullRequestRecords(unittest.TestCase):

    def test_pull_request_from_api(self):
        pr = pull_request_from_api("acme", "web", {
            "number": 9, "title": "Fix checkout", "html_url": "u", "state": "closed",
            "created_at": "2025-01-06T00:00:00Z", "closed_at": "2025-01-07T00:00:00Z",
            "merged_at": "2025-01-07T00:00:00Z", "user": {"login": "bob"},
        })
        self.assertEqual(pr.number, 9)
        self.assertEqual(pr.merged_at, ts(7))
        self.assertEqual(pr.creator, "bob")

    def test_review_from_api(self):
        review = review_from_api("acme", "web", 9, {"state": "changes_requested",
                                                    "submitted_at": "2025-01-06T10:00:00Z",
                                                    "user": {"login": "carol"}})
        self.assertEqual(review.state, "CHANGES_REQUESTED")
        self.assertEqual(review.user, "carol")


if __name__ == '__main__':
    unittest.main()
