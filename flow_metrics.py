#!/usr/bin/env python3
"""
Flow Metrics

Aggregates computed issues into time series:
- monthly lead/cycle time averages
- weekly throughput with c-chart control limits
- current and backward-reconstructed weekly WIP stocks
- pull-request change-request statistics
"""

import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from config import ALL_REPOS_LABEL, CONTROL_CHART_BLOCK_WEEKS
from lifecycle import PullRequestRecord, ReviewRecord
from stage_mapping import ComputedIssue
from utils_dates import align_to_monday, days_between, iso_week, iter_mondays, month_key, utc_now, week_cutoff


MONTHLY_COLUMNS = ['month', 'issue_count', 'lead_avg_days', 'lead_count',
                   'cycle_avg_days', 'cycle_count', 'time_to_review_avg']
THROUGHPUT_COLUMNS = ['iso_year', 'iso_week', 'count', 'center', 'ucl', 'lcl']

# Furthest stage first
STOCK_BUCKETS = ['waiting_to_prod', 'qa', 'review', 'dev', 'ready', 'backlog']
STOCK_COLUMNS = ['board_id', 'board_name', 'defects', 'backlog', 'ready', 'dev', 'review', 'qa', 'waiting_to_prod']
WEEKLY_STOCK_COLUMNS = ['iso_year', 'iso_week'] + STOCK_COLUMNS

PR_STAT_COLUMNS = ['mean', 'median', 'p90', 'pr_count', 'total_change_requests']
PR_WEEK_COLUMNS = ['iso_year', 'iso_week', 'repo'] + PR_STAT_COLUMNS
PR_REPO_COLUMNS = ['repo'] + PR_STAT_COLUMNS

CHANGES_REQUESTED = 'CHANGES_REQUESTED'


@dataclass(frozen=True)
class ControlLimits:
    center: float
    ucl: float
    lcl: float


# ============================================================================
# LEAD / CYCLE TIME
# ============================================================================

def monthly_summary(issues: Iterable[ComputedIssue]) -> pd.DataFrame:
    """
    Average lead and cycle time per completion month.

    Issues missing a stage start are skipped for that stage only. Time to
    review is averaged over issues where review started after dev.
    """
    rows = []
    for issue in issues:
        end = issue.end
        if end is None:
            continue
        stages = issue.stages
        review_wait = np.nan
        if stages.review_start and stages.dev_start and stages.review_start >= stages.dev_start:
            review_wait = days_between(stages.dev_start, stages.review_start)
        rows.append({
            'month': month_key(end),
            'lead_days': days_between(stages.lead_start, end) if stages.lead_start else np.nan,
            'cycle_days': days_between(stages.cycle_start, end) if stages.cycle_start else np.nan,
            'review_wait_days': review_wait,
        })

    if not rows:
        return pd.DataFrame(columns=MONTHLY_COLUMNS)

    df = pd.DataFrame(rows)
    summary = df.groupby('month').agg(
        issue_count=('month', 'size'),
        lead_avg_days=('lead_days', 'mean'),
        lead_count=('lead_days', 'count'),
        cycle_avg_days=('cycle_days', 'mean'),
        cycle_count=('cycle_days', 'count'),
        time_to_review_avg=('review_wait_days', 'mean'),
    ).reset_index()
    return summary.round(2)[MONTHLY_COLUMNS]


# ============================================================================
# THROUGHPUT CONTROL CHART
# ============================================================================

def c_chart_limits(mean: float) -> ControlLimits:
    """Poisson control limits around a mean count"""
    sigma = math.sqrt(mean) if mean > 0 else 0.0
    return ControlLimits(center=mean, ucl=mean + 3 * sigma, lcl=max(0.0, mean - 3 * sigma))


def control_limits(counts: Sequence[int], block: int = CONTROL_CHART_BLOCK_WEEKS) -> List[ControlLimits]:
    """
    Control limits for each week of a contiguous weekly count series.

    Fewer than `block` weeks share one set of limits from the overall mean.
    Otherwise each full block gets limits from its own mean and a trailing
    partial block reuses the previous block's limits.
    """
    if not counts:
        return []
    if len(counts) < block:
        limits = c_chart_limits(float(np.mean(counts)))
        return [limits] * len(counts)

    result: List[ControlLimits] = []
    current: Optional[ControlLimits] = None
    for start in range(0, len(counts), block):
        chunk = counts[start:start + block]
        if len(chunk) == block:
            current = c_chart_limits(float(np.mean(chunk)))
        result.extend([current] * len(chunk))
    return result


def weekly_throughput(issues: Iterable[ComputedIssue], now: Optional[datetime] = None) -> pd.DataFrame:
    """
    Completed issues per ISO week with control limits.

    The week containing `now` is still accumulating and is left out. Weeks
    without completions between the first and last observed week are
    included with a zero count.
    """
    current_week = align_to_monday(now or utc_now())
    ends = [issue.end for issue in issues if issue.end is not None]
    if not ends:
        return pd.DataFrame(columns=THROUGHPUT_COLUMNS)

    per_week = Counter(align_to_monday(end) for end in ends)
    # Axis spans every observed completion; the accumulating week is cut afterwards
    mondays = [monday for monday in iter_mondays(min(ends), max(ends)) if monday < current_week]
    if not mondays:
        return pd.DataFrame(columns=THROUGHPUT_COLUMNS)
    counts = [per_week.get(monday, 0) for monday in mondays]
    limits = control_limits(counts)

    rows = []
    for monday, count, limit in zip(mondays, counts, limits):
        year, week = iso_week(monday)
        rows.append({
            'iso_year': year,
            'iso_week': week,
            'count': count,
            'center': round(limit.center, 2),
            'ucl': round(limit.ucl, 2),
            'lcl': round(limit.lcl, 2),
        })
    return pd.DataFrame(rows, columns=THROUGHPUT_COLUMNS)


# ============================================================================
# WIP STOCKS
# ============================================================================

def classify_stage(issue: ComputedIssue, cutoff: Optional[datetime] = None) -> str:
    """
    Furthest stage an issue has reached.

    Args:
        issue: Computed issue
        cutoff: Only consider stage timestamps at or before this time

    Returns:
        One of waiting_to_prod, qa, review, dev, ready, backlog
    """
    stages = issue.stages
    reached = {
        'waiting_to_prod': stages.waiting_to_prod_start,
        'qa': stages.qa_start,
        'review': stages.review_start,
        'dev': stages.dev_start,
        'ready': stages.ready_start,
    }
    for bucket in STOCK_BUCKETS[:-1]:
        at = reached[bucket]
        if at is not None and (cutoff is None or at <= cutoff):
            return bucket
    return 'backlog'


def _count_stocks(issues: Iterable[ComputedIssue], cutoff: Optional[datetime] = None) -> List[Dict]:
    boards: Dict[str, Dict] = {}
    for issue in issues:
        row = boards.get(issue.board_id)
        if row is None:
            row = {column: 0 for column in STOCK_COLUMNS}
            row['board_id'] = issue.board_id
            row['board_name'] = issue.board_name
            boards[issue.board_id] = row
        row[classify_stage(issue, cutoff)] += 1
        if issue.is_bug:
            row['defects'] += 1
    return [boards[board_id] for board_id in sorted(boards)]


def current_stocks(issues: Iterable[ComputedIssue]) -> pd.DataFrame:
    """Open issues per board, one stage bucket each, plus the defect count"""
    open_issues = [issue for issue in issues if issue.is_open]
    return pd.DataFrame(_count_stocks(open_issues), columns=STOCK_COLUMNS)


def _latest_timestamp(issues: Sequence[ComputedIssue]) -> datetime:
    latest = max(issue.created_at for issue in issues)
    for issue in issues:
        for value in issue.stages.as_dict().values():
            if value is not None and value > latest:
                latest = value
    return latest


def weekly_stocks(issues: Iterable[ComputedIssue]) -> pd.DataFrame:
    """
    WIP stocks reconstructed at the end of every week.

    For each Monday from the earliest creation to the latest observed
    timestamp, issues are classified using only what had happened by Sunday
    23:59:59 UTC. Issues not yet created or already completed are skipped.
    """
    issues = list(issues)
    if not issues:
        return pd.DataFrame(columns=WEEKLY_STOCK_COLUMNS)

    earliest = min(issue.created_at for issue in issues)
    rows = []
    for monday in iter_mondays(earliest, _latest_timestamp(issues)):
        cutoff = week_cutoff(monday)
        active = [
            issue for issue in issues
            if issue.created_at <= cutoff and (issue.end is None or issue.end > cutoff)
        ]
        year, week = iso_week(monday)
        for row in _count_stocks(active, cutoff):
            rows.append({'iso_year': year, 'iso_week': week, **row})
    return pd.DataFrame(rows, columns=WEEKLY_STOCK_COLUMNS)


# ============================================================================
# PULL REQUEST CHANGE REQUESTS
# ============================================================================

def _describe(values: pd.Series) -> Dict:
    if values.empty:
        return {'mean': 0.0, 'median': 0.0, 'p90': 0.0, 'pr_count': 0, 'total_change_requests': 0}
    return {
        'mean': round(float(values.mean()), 2),
        'median': round(float(values.median()), 2),
        'p90': round(float(np.percentile(values, 90)), 2),
        'pr_count': int(values.size),
        'total_change_requests': int(values.sum()),
    }


def pr_change_request_stats(prs: Iterable[PullRequestRecord],
                            reviews: Iterable[ReviewRecord]) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Changes-requested reviews per pull request.

    Returns:
        (weekly, per_repo): weekly rows per ISO week of PR creation and repo
        plus an ALL row per week; per-repo rows plus an overall ALL row
    """
    requested = Counter(
        (review.org, review.repo, review.number)
        for review in reviews
        if review.state.upper() == CHANGES_REQUESTED
    )

    rows = []
    for pr in prs:
        year, week = iso_week(pr.created_at)
        rows.append({
            'iso_year': year,
            'iso_week': week,
            'repo': pr.repo,
            'change_requests': requested.get((pr.org, pr.repo, pr.number), 0),
        })

    if not rows:
        return pd.DataFrame(columns=PR_WEEK_COLUMNS), pd.DataFrame(columns=PR_REPO_COLUMNS)

    df = pd.DataFrame(rows)

    weekly_rows = []
    for (year, week), week_df in df.groupby(['iso_year', 'iso_week'], sort=True):
        for repo, repo_df in week_df.groupby('repo', sort=True):
            weekly_rows.append({'iso_year': year, 'iso_week': week, 'repo': repo,
                                **_describe(repo_df['change_requests'])})
        weekly_rows.append({'iso_year': year, 'iso_week': week, 'repo': ALL_REPOS_LABEL,
                            **_describe(week_df['change_requests'])})

    repo_rows = [{'repo': repo, **_describe(repo_df['change_requests'])}
                 for repo, repo_df in df.groupby('repo', sort=True)]
    repo_rows.append({'repo': ALL_REPOS_LABEL, **_describe(df['change_requests'])})

    return (pd.DataFrame(weekly_rows, columns=PR_WEEK_COLUMNS),
            pd.DataFrame(repo_rows, columns=PR_REPO_COLUMNS))
