#!/usr/bin/env python3
"""
CSV boundary for the flow metrics pipeline.

Every output file is rebuilt in full and swapped into place atomically, so a
failed run leaves the previous file untouched. Column order is fixed since
the dashboard reads these files by header.
"""

import os
import tempfile
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd

from lifecycle import (
    BoardMoveEvent,
    IssueLifecycle,
    IssueRecord,
    PullRequestRecord,
    ReviewRecord,
    StatusEvent,
    rebuild_current_placements,
)
from stage_mapping import ComputedIssue
from utils_dates import format_timestamp, parse_timestamp


CSV_COLUMNS: Dict[str, List[str]] = {
    'repository.csv': ['org', 'repo', 'owner', 'private'],
    'issue.csv': ['org', 'repo', 'number', 'title', 'url', 'state', 'is_bug', 'creator',
                  'assignees', 'created_at', 'closed_at', 'committer', 'type'],
    'issue_status_event.csv': ['org', 'repo', 'number', 'type', 'at', 'by'],
    'issue_board_event.csv': ['org', 'repo', 'number', 'board_id', 'board_name',
                              'from_stage', 'to_stage', 'at', 'by', 'kind'],
    'board.csv': ['board_id', 'board_name'],
    'pr.csv': ['org', 'repo', 'number', 'title', 'url', 'state', 'created_at',
               'closed_at', 'merged_at', 'creator'],
    'pr_review.csv': ['org', 'repo', 'number', 'state', 'submitted_at', 'user'],
    'calculated_issue.csv': ['id', 'name', 'board_id', 'board_name', 'created_at', 'lead_start',
                             'cycle_start', 'dev_start', 'review_start', 'qa_start', 'ready_start',
                             'waiting_to_prod_start', 'end', 'is_bug', 'type'],
    'cycle_time.csv': ['month', 'issue_count', 'lead_avg_days', 'lead_count',
                       'cycle_avg_days', 'cycle_count', 'time_to_review_avg'],
    'throughput_week.csv': ['iso_year', 'iso_week', 'count', 'center', 'ucl', 'lcl'],
    'stocks.csv': ['board_id', 'board_name', 'defects', 'backlog', 'ready', 'dev',
                   'review', 'qa', 'waiting_to_prod'],
    'stocks_week.csv': ['iso_year', 'iso_week', 'board_id', 'board_name', 'defects', 'backlog',
                        'ready', 'dev', 'review', 'qa', 'waiting_to_prod'],
    'pr_change_requests_week.csv': ['iso_year', 'iso_week', 'repo', 'mean', 'median', 'p90',
                                    'pr_count', 'total_change_requests'],
    'pr_change_requests_repo.csv': ['repo', 'mean', 'median', 'p90', 'pr_count',
                                    'total_change_requests'],
}


def _bool(value: bool) -> str:
    return 'true' if value else 'false'


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ('true', '1', 'yes')


# ============================================================================
# LOW LEVEL READ / WRITE
# ============================================================================

def write_csv(data: Union[pd.DataFrame, Iterable[Dict]], path: Union[str, Path],
              columns: Sequence[str]) -> Path:
    """
    Write rows to a CSV file atomically.

    Args:
        data: DataFrame or iterable of row dicts
        path: Target file
        columns: Exact column order for the header

    Returns:
        Path of the written file
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    df = data if isinstance(data, pd.DataFrame) else pd.DataFrame(list(data), columns=list(columns))
    df = df.reindex(columns=list(columns))

    temp_fd, temp_path = tempfile.mkstemp(suffix='.csv', dir=str(target.parent), text=True)
    try:
        with os.fdopen(temp_fd, 'w', encoding='utf-8', newline='') as f:
            df.to_csv(f, index=False, na_rep='')
        os.replace(temp_path, target)
    except BaseException:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise
    return target


def read_csv(path: Union[str, Path], columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Read a CSV as strings; a missing file reads as an empty frame"""
    source = Path(path)
    if not source.exists():
        return pd.DataFrame(columns=list(columns or []))
    df = pd.read_csv(source, dtype=str, keep_default_na=False)
    if columns is not None:
        df = df.reindex(columns=list(columns), fill_value='')
    return df


def write_named(data_dir: Union[str, Path], name: str, data) -> Path:
    return write_csv(data, Path(data_dir) / name, CSV_COLUMNS[name])


def read_named(data_dir: Union[str, Path], name: str) -> pd.DataFrame:
    return read_csv(Path(data_dir) / name, CSV_COLUMNS[name])


# ============================================================================
# IMPORT OUTPUTS
# ============================================================================

def repository_rows(org: str, repos: Iterable[Dict]) -> List[Dict]:
    return [{
        'org': org,
        'repo': repo.get('name', ''),
        'owner': (repo.get('owner') or {}).get('login', ''),
        'private': _bool(repo.get('private', False)),
    } for repo in repos]


def issue_rows(lifecycles: Iterable[IssueLifecycle]) -> List[Dict]:
    rows = []
    for lifecycle in lifecycles:
        record = lifecycle.record
        rows.append({
            'org': record.org,
            'repo': record.repo,
            'number': record.number,
            'title': record.title,
            'url': record.url,
            'state': record.state,
            'is_bug': _bool(record.is_bug),
            'creator': record.creator,
            'assignees': ';'.join(record.assignees),
            'created_at': format_timestamp(record.created_at),
            'closed_at': format_timestamp(record.closed_at),
            'committer': lifecycle.committer,
            'type': record.type,
        })
    return rows


def status_event_rows(lifecycles: Iterable[IssueLifecycle]) -> List[Dict]:
    return [{
        'org': lifecycle.record.org,
        'repo': lifecycle.record.repo,
        'number': lifecycle.record.number,
        'type': event.type,
        'at': format_timestamp(event.at),
        'by': event.actor,
    } for lifecycle in lifecycles for event in lifecycle.status_history]


def board_event_rows(lifecycles: Iterable[IssueLifecycle]) -> List[Dict]:
    return [{
        'org': lifecycle.record.org,
        'repo': lifecycle.record.repo,
        'number': lifecycle.record.number,
        'board_id': event.board_id,
        'board_name': event.board_name,
        'from_stage': event.from_stage,
        'to_stage': event.to_stage,
        'at': format_timestamp(event.at),
        'by': event.actor,
        'kind': event.kind,
    } for lifecycle in lifecycles for event in lifecycle.board_history]


def board_rows(lifecycles: Iterable[IssueLifecycle]) -> List[Dict]:
    """Distinct boards seen in any board history, keeping the first non-empty name"""
    names: Dict[str, str] = {}
    for lifecycle in lifecycles:
        for event in lifecycle.board_history:
            if event.board_id and not names.get(event.board_id):
                names[event.board_id] = event.board_name
    return [{'board_id': board_id, 'board_name': names[board_id]} for board_id in sorted(names)]


def write_import_outputs(data_dir: Union[str, Path], org: str, repos: List[Dict],
                         lifecycles: List[IssueLifecycle]) -> List[Path]:
    """Write repository, issue, event and board CSVs"""
    return [
        write_named(data_dir, 'repository.csv', repository_rows(org, repos)),
        write_named(data_dir, 'issue.csv', issue_rows(lifecycles)),
        write_named(data_dir, 'issue_status_event.csv', status_event_rows(lifecycles)),
        write_named(data_dir, 'issue_board_event.csv', board_event_rows(lifecycles)),
        write_named(data_dir, 'board.csv', board_rows(lifecycles)),
    ]


def pull_request_rows(prs: Iterable[PullRequestRecord]) -> List[Dict]:
    return [{
        'org': pr.org,
        'repo': pr.repo,
        'number': pr.number,
        'title': pr.title,
        'url': pr.url,
        'state': pr.state,
        'created_at': format_timestamp(pr.created_at),
        'closed_at': format_timestamp(pr.closed_at),
        'merged_at': format_timestamp(pr.merged_at),
        'creator': pr.creator,
    } for pr in prs]


def review_rows(reviews: Iterable[ReviewRecord]) -> List[Dict]:
    return [{
        'org': review.org,
        'repo': review.repo,
        'number': review.number,
        'state': review.state,
        'submitted_at': format_timestamp(review.submitted_at),
        'user': review.user,
    } for review in reviews]


def write_pull_request_outputs(data_dir: Union[str, Path], prs: List[PullRequestRecord],
                               reviews: List[ReviewRecord]) -> List[Path]:
    return [
        write_named(data_dir, 'pr.csv', pull_request_rows(prs)),
        write_named(data_dir, 'pr_review.csv', review_rows(reviews)),
    ]


# ============================================================================
# READING IMPORT OUTPUTS BACK
# ============================================================================

def _issue_key(row: Dict) -> Tuple[str, str, int]:
    return row['org'], row['repo'], int(row['number'])


def read_lifecycles(data_dir: Union[str, Path]) -> List[IssueLifecycle]:
    """Rebuild issue lifecycles from issue.csv and the two event CSVs"""
    status_by_issue = defaultdict(list)
    for row in read_named(data_dir, 'issue_status_event.csv').to_dict('records'):
        status_by_issue[_issue_key(row)].append(
            StatusEvent(row['type'], parse_timestamp(row['at']), row['by']))

    board_by_issue = defaultdict(list)
    for row in read_named(data_dir, 'issue_board_event.csv').to_dict('records'):
        board_by_issue[_issue_key(row)].append(BoardMoveEvent(
            board_id=row['board_id'],
            board_name=row['board_name'],
            from_stage=row['from_stage'],
            to_stage=row['to_stage'],
            at=parse_timestamp(row['at']),
            actor=row['by'],
            kind=row['kind'],
        ))

    lifecycles = []
    for row in read_named(data_dir, 'issue.csv').to_dict('records'):
        key = _issue_key(row)
        record = IssueRecord(
            org=row['org'],
            repo=row['repo'],
            number=key[2],
            title=row['title'],
            url=row['url'],
            state=row['state'],
            creator=row['creator'],
            assignees=tuple(a for a in row['assignees'].split(';') if a),
            created_at=parse_timestamp(row['created_at']),
            closed_at=parse_timestamp(row['closed_at']),
            is_bug=_parse_bool(row['is_bug']),
            type=row['type'] or 'task',
        )
        status_history = sorted(status_by_issue.get(key, []), key=lambda e: e.at)
        if not status_history or status_history[0].type != 'opened':
            status_history.insert(0, StatusEvent('opened', record.created_at, record.creator))
        board_history = sorted(board_by_issue.get(key, []), key=lambda e: e.at)
        lifecycles.append(IssueLifecycle(
            record=record,
            status_history=status_history,
            board_history=board_history,
            current_placements=rebuild_current_placements(board_history),
            committer=row['committer'],
        ))
    return lifecycles


def read_pull_requests(data_dir: Union[str, Path]) -> Tuple[List[PullRequestRecord], List[ReviewRecord]]:
    prs = [PullRequestRecord(
        org=row['org'],
        repo=row['repo'],
        number=int(row['number']),
        title=row['title'],
        url=row['url'],
        state=row['state'],
        created_at=parse_timestamp(row['created_at']),
        closed_at=parse_timestamp(row['closed_at']),
        merged_at=parse_timestamp(row['merged_at']),
        creator=row['creator'],
    ) for row in read_named(data_dir, 'pr.csv').to_dict('records') if row['created_at']]

    reviews = [ReviewRecord(
        org=row['org'],
        repo=row['repo'],
        number=int(row['number']),
        state=row['state'],
        submitted_at=parse_timestamp(row['submitted_at']),
        user=row['user'],
    ) for row in read_named(data_dir, 'pr_review.csv').to_dict('records')]
    return prs, reviews


# ============================================================================
# CALCULATED OUTPUTS
# ============================================================================

def calculated_issue_rows(issues: Iterable[ComputedIssue]) -> List[Dict]:
    rows = []
    for issue in issues:
        row = {
            'id': issue.id,
            'name': issue.name,
            'board_id': issue.board_id,
            'board_name': issue.board_name,
            'created_at': format_timestamp(issue.created_at),
            'is_bug': _bool(issue.is_bug),
            'type': issue.type,
        }
        for name, value in issue.stages.as_dict().items():
            row[name] = format_timestamp(value)
        rows.append(row)
    return rows
