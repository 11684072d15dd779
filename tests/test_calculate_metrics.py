#!/usr/bin/env python3
"""
Integration tests for calculate_metrics.py - from imported CSVs to reports
"""
# /// script
# requires-python = ">=3.8"
# dependencies = [
#     "requests",
#     "rich",
#     "python-dotenv",
#     "pandas",
#     "numpy",
#     "pyyaml",
#     "pytest",
# ]
# ///

import io
import os
import sys
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from rich.console import Console

# Add parent directory to path to import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from calculate_metrics import calculate, load_config_or_default, main, unconfigured_boards
from config import FlowConfig
from csv_io import read_csv, write_import_outputs, write_pull_request_outputs
from lifecycle import IssueRecord, PullRequestRecord, ReviewRecord, TimelineEvent, aggregate_lifecycle
from stage_mapping import compute_issues
from status_display import StatusDisplay


def ts(day, month=1):
    return datetime(2025, month, day, tzinfo=timezone.utc)


def quiet_status():
    return StatusDisplay(console=Console(file=io.StringIO()), error_console=Console(file=io.StringIO()))


def lifecycle(number, events, board_id="900", status_events=(), **record):
    values = dict(org="acme", repo="web", number=number, title=f"Issue {number}", url="", state="open",
                  creator="alice", assignees=(), created_at=ts(1))
    values.update(record)
    board_events = [TimelineEvent(kind=kind, at=at, actor="bob", board_id=board_id, board_name="Delivery",
                                  to_stage=status)
                    for kind, at, status in events]
    return aggregate_lifecycle(IssueRecord(**values), board_events + list(status_events))


def closed(at):
    return TimelineEvent(kind='closed', at=at, actor="dave", scheme='status')


class TestCalculate(unittest.TestCase):

    NOW = datetime(2025, 3, 3, tzinfo=timezone.utc)

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.data_dir = str(Path(self.tmp.name) / "data")
        self.status = quiet_status()

        done = lifecycle(1, [('moved', ts(5), "In Progress"), ('moved', ts(10), "In Review")],
                         status_events=[closed(ts(15))])
        in_progress = lifecycle(2, [('added', ts(2), ""), ('moved', ts(3), "In Progress")], is_bug=True, type="bug")
        excluded = lifecycle(3, [('moved', ts(3), "In Progress")], board_id="901")
        self.lifecycles = [done, in_progress, excluded]
        write_import_outputs(self.data_dir, "acme", [], self.lifecycles)

        self.config = FlowConfig.from_dict({"github": {"projects": [{"id": 901, "exclude": True}]}})

    def tearDown(self):
        self.tmp.cleanup()

    def read(self, name):
        return read_csv(Path(self.data_dir) / name)

    def test_writes_all_issue_reports(self):
        written = calculate(self.data_dir, self.config, now=self.NOW, status=self.status)

        names = sorted(path.name for path in written)
        self.assertEqual(names, ['calculated_issue.csv', 'cycle_time.csv', 'stocks.csv',
                                 'stocks_week.csv', 'throughput_week.csv'])

    def test_calculated_issues(self):
        calculate(self.data_dir, self.config, now=self.NOW, status=self.status)

        issues = self.read('calculated_issue.csv').set_index('id')
        self.assertEqual(sorted(issues.index), ["acme/web#1", "acme/web#2"])
        done = issues.loc["acme/web#1"]
        self.assertEqual(done['cycle_start'], "2025-01-05T00:00:00Z")
        self.assertEqual(done['review_start'], "2025-01-10T00:00:00Z")
        self.assertEqual(done['end'], "2025-01-15T00:00:00Z")
        self.assertEqual(issues.loc["acme/web#2", 'end'], "")

    def test_cycle_time_report(self):
        calculate(self.data_dir, self.config, now=self.NOW, status=self.status)

        month = self.read('cycle_time.csv').iloc[0]
        self.assertEqual(month['month'], "2025-01")
        self.assertEqual(float(month['cycle_avg_days']), 10.0)
        self.assertEqual(float(month['lead_avg_days']), 14.0)

    def test_stocks_report(self):
        calculate(self.data_dir, self.config, now=self.NOW, status=self.status)

        stocks = self.read('stocks.csv').iloc[0]
        self.assertEqual(stocks['board_id'], "900")
        self.assertEqual(stocks['dev'], "1")
        self.assertEqual(stocks['defects'], "1")

    def test_throughput_report(self):
        calculate(self.data_dir, self.config, now=self.NOW, status=self.status)

        throughput = self.read('throughput_week.csv')
        self.assertEqual(list(throughput['count']), ["1"])
        self.assertEqual(throughput.iloc[0]['iso_week'], "3")

    def test_pull_request_reports(self):
        prs = [PullRequestRecord(org="acme", repo="web", number=5, title="", url="", state="open",
                                 created_at=ts(6))]
        reviews = [ReviewRecord(org="acme", repo="web", number=5, state="CHANGES_REQUESTED")]
        write_pull_request_outputs(self.data_dir, prs, reviews)

        written = calculate(self.data_dir, self.config, now=self.NOW, status=self.status)

        self.assertIn('pr_change_requests_week.csv', [path.name for path in written])
        per_repo = self.read('pr_change_requests_repo.csv')
        self.assertEqual(list(per_repo['repo']), ["web", "ALL"])
        self.assertEqual(per_repo.iloc[0]['total_change_requests'], "1")

    def test_unconfigured_board_warning(self):
        config = FlowConfig.from_dict({"github": {"projects": [{"id": 777, "name": "Other"}]}})

        issues = compute_issues(self.lifecycles, config)

        self.assertEqual(unconfigured_boards(issues, config), ["Delivery (900)", "Delivery (901)"])
        calculate(self.data_dir, config, now=self.NOW, status=self.status)
        self.assertEqual(self.status.warning_count, 2)


class TestConfigFallback(unittest.TestCase):

    def test_missing_config_falls_back_to_defaults(self):
        status = quiet_status()

        config = load_config_or_default("/nonexistent/config.yml", status)

        self.assertEqual(config.boards, {})
        self.assertEqual(status.warning_count, 1)

    @patch('calculate_metrics.load_dotenv')
    def test_main(self, mock_dotenv):
        with tempfile.TemporaryDirectory() as tmp:
            argv = ['calculate_metrics.py', '--data-dir', tmp, '--config', str(Path(tmp) / 'absent.yml'),
                    '--now', '2025-03-03T00:00:00Z']
            with patch.object(sys, 'argv', argv), \
                    patch('calculate_metrics.StatusDisplay', return_value=quiet_status()):
                self.assertEqual(main(), 0)
            self.assertTrue((Path(tmp) / 'throughput_week.csv').exists())

    @patch('calculate_metrics.load_dotenv')
    def test_main_rejects_bad_now(self, mock_dotenv):
        with tempfile.TemporaryDirectory() as tmp:
            argv = ['calculate_metrics.py', '--data-dir', tmp, '--now', 'yesterday']
            with patch.object(sys, 'argv', argv), \
                    patch('calculate_metrics.StatusDisplay', return_value=quiet_status()):
                self.assertEqual(main(), 1)


if __name__ == '__main__':
    unittest.main()
