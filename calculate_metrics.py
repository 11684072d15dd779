#!/usr/bin/env python3
"""
Flow Metrics Calculation

Reads the CSVs written by sync_issues.py, maps each issue's board history
onto process stages and writes the computed issues plus the lead/cycle,
throughput, stock and pull request change-request reports.
"""
# /// script
# requires-python = ">=3.8"
# dependencies = [
#     "pandas",
#     "numpy",
#     "python-dotenv",
#     "rich",
#     "pyyaml",
# ]
# ///

import argparse
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from config import NO_MATCH, ConfigMissing, FlowConfig, get_config_path, get_data_dir, load_flow_config
from csv_io import calculated_issue_rows, read_lifecycles, read_pull_requests, write_named
from flow_metrics import (
    current_stocks,
    monthly_summary,
    pr_change_request_stats,
    weekly_stocks,
    weekly_throughput,
)
from stage_mapping import ComputedIssue, compute_issues
from status_display import StatusDisplay
from utils_dates import parse_timestamp, utc_now


def unconfigured_boards(issues: List[ComputedIssue], flow_config: FlowConfig) -> List[str]:
    """Boards that fall back to the default status vocabulary"""
    boards = {issue.board_id: issue.board_name for issue in issues
              if issue.board_id and flow_config.lookup(issue.board_id) is NO_MATCH}
    return [f"{name or '?'} ({board_id})" for board_id, name in sorted(boards.items())]


def calculate(data_dir: str, flow_config: FlowConfig, now: Optional[datetime] = None,
              status: Optional[StatusDisplay] = None) -> List[Path]:
    """
    Compute every report from the imported CSVs.

    Args:
        data_dir: Directory holding the import CSVs; reports are written here too
        flow_config: Board stage mappings
        now: Reference time for excluding the current throughput week
        status: Display for progress and warnings

    Returns:
        Paths of the written files
    """
    status = status or StatusDisplay()
    now = now or utc_now()
    written = []

    lifecycles = read_lifecycles(data_dir)
    issues = compute_issues(lifecycles, flow_config)
    status.print(f"📊 {len(issues)} issues computed ({len(lifecycles) - len(issues)} excluded by board config)")

    if flow_config.boards:
        for board in unconfigured_boards(issues, flow_config):
            status.warn(f"No stage mapping for board {board} - using default status names")

    written.append(write_named(data_dir, 'calculated_issue.csv', calculated_issue_rows(issues)))
    written.append(write_named(data_dir, 'cycle_time.csv', monthly_summary(issues)))
    written.append(write_named(data_dir, 'throughput_week.csv', weekly_throughput(issues, now)))
    written.append(write_named(data_dir, 'stocks.csv', current_stocks(issues)))
    written.append(write_named(data_dir, 'stocks_week.csv', weekly_stocks(issues)))

    prs, reviews = read_pull_requests(data_dir)
    if prs:
        weekly, per_repo = pr_change_request_stats(prs, reviews)
        written.append(write_named(data_dir, 'pr_change_requests_week.csv', weekly))
        written.append(write_named(data_dir, 'pr_change_requests_repo.csv', per_repo))
    else:
        status.print("ℹ️  No pull requests found - skipping change-request report", style="dim")

    return written


def load_config_or_default(path: str, status: StatusDisplay) -> FlowConfig:
    try:
        return load_flow_config(path)
    except ConfigMissing as e:
        status.warn(f"{e} - default status names will be used for every board")
        return FlowConfig()


def main():
    """Main execution function"""
    parser = argparse.ArgumentParser(
        description='Calculate flow metrics from synced GitHub CSV data',
    )
    parser.add_argument('--config', help='Board configuration YAML (default: CONFIG_PATH or ./config.yml)')
    parser.add_argument('--data-dir', help='Directory with the synced CSV files')
    parser.add_argument('--now', help='Reference time (RFC3339) for the current week, for reproducible runs')
    args = parser.parse_args()

    # Load environment variables from .env file
    load_dotenv()

    status = StatusDisplay()
    flow_config = load_config_or_default(args.config or get_config_path(), status)

    try:
        now = parse_timestamp(args.now) if args.now else None
    except ValueError:
        status.error(f"Invalid --now timestamp: {args.now}")
        return 1

    for path in calculate(args.data_dir or get_data_dir(), flow_config, now=now, status=status):
        status.print(f"💾 Wrote {path}", style="blue")
    status.print("✅ Flow metrics calculated", style="green bold")
    return 0


if __name__ == "__main__":
    sys.exit(main())
