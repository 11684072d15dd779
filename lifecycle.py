#!/usr/bin/env python3
"""
Issue Lifecycle Aggregation

Turns one issue's creation record plus its unordered timeline (REST and
GraphQL feeds merged) into an ordered status history, an ordered board-move
history and the issue's current board placements.

Pull requests and their reviews are kept as flat records; they feed the
change-request report and never enter an issue lifecycle.

Two board schemes are reconciled here:
- legacy project cards carry only a column id, resolved through BoardNameCache
- Projects (v2) events carry the board id and status name directly
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, MutableMapping, Optional, Tuple

from github_client import UpstreamError
from utils_dates import parse_timestamp


class LookupMiss(Exception):
    """A board or column id could not be resolved to a name"""

    def __init__(self, kind: str, key: Any, reason: str = ""):
        super().__init__(f"{kind} {key} could not be resolved{': ' + reason if reason else ''}")
        self.kind = kind
        self.key = key


# Status changes sort before board moves when timestamps tie
KIND_PRIORITY = {
    'closed': 0,
    'reopened': 0,
    'added': 1,
    'moved': 2,
    'removed': 3,
}

STATUS_KINDS = ('closed', 'reopened')

LEGACY_EVENT_KINDS = {
    'added_to_project': 'added',
    'moved_columns_in_project': 'moved',
    'removed_from_project': 'removed',
}

MODERN_EVENT_KINDS = {
    'ClosedEvent': 'closed',
    'ReopenedEvent': 'reopened',
    'AddedToProjectV2Event': 'added',
    'ProjectV2ItemStatusChangedEvent': 'moved',
    'RemovedFromProjectV2Event': 'removed',
}


@dataclass(frozen=True)
class IssueRecord:
    """Immutable snapshot of an issue at ingestion time"""
    org: str
    repo: str
    number: int
    title: str
    url: str
    state: str
    creator: str
    assignees: Tuple[str, ...]
    created_at: datetime
    closed_at: Optional[datetime] = None
    is_bug: bool = False
    type: str = "task"

    @property
    def id(self) -> str:
        return f"{self.org}/{self.repo}#{self.number}"


@dataclass(frozen=True)
class TimelineEvent:
    """One normalized entry from either timeline feed"""
    kind: str
    at: datetime
    actor: str = ""
    scheme: str = "modern"
    board_id: str = ""
    board_name: str = ""
    column_id: Optional[int] = None
    from_stage: str = ""
    to_stage: str = ""


@dataclass(frozen=True)
class StatusEvent:
    type: str
    at: datetime
    actor: str = ""


@dataclass(frozen=True)
class BoardMoveEvent:
    board_id: str
    board_name: str
    from_stage: str
    to_stage: str
    at: datetime
    actor: str
    kind: str


@dataclass(frozen=True)
class BoardPlacement:
    """Where an issue currently sits on one board"""
    board_id: str
    board_name: str
    status: str


@dataclass
class IssueLifecycle:
    record: IssueRecord
    status_history: List[StatusEvent] = field(default_factory=list)
    board_history: List[BoardMoveEvent] = field(default_factory=list)
    current_placements: List[BoardPlacement] = field(default_factory=list)
    committer: str = ""
    # closed events seen while the issue was already closed
    unmatched_closes: int = 0


# ============================================================================
# ISSUE RECORDS
# ============================================================================

def _login(user: Optional[Dict]) -> str:
    if not user:
        return ""
    return user.get('login') or ""


def detect_issue_type(raw: Dict) -> Tuple[str, bool]:
    """
    Derive an issue's type and bug flag.

    The structured issue type wins when present; otherwise label names are
    matched: "bug", then anything containing feature, chore/refactor or doc.

    Returns:
        (type, is_bug)
    """
    structured = raw.get('type') or raw.get('issue_type')
    if isinstance(structured, dict):
        structured = structured.get('name')
    issue_type = (structured or '').strip().lower()
    is_bug = False

    if not issue_type:
        for label in raw.get('labels') or []:
            name = (label.get('name') if isinstance(label, dict) else str(label)).strip().lower()
            if name == 'bug':
                is_bug = True
                issue_type = issue_type or 'bug'
            elif not issue_type:
                if 'feature' in name:
                    issue_type = 'feature'
                elif 'chore' in name or 'refactor' in name:
                    issue_type = 'chore'
                elif 'doc' in name:
                    issue_type = 'docs'
        issue_type = issue_type or 'task'

    if issue_type == 'bug':
        is_bug = True
    return issue_type, is_bug


def issue_record_from_api(org: str, repo: str, raw: Dict) -> IssueRecord:
    """Build the immutable IssueRecord from a REST issue payload"""
    issue_type, is_bug = detect_issue_type(raw)
    return IssueRecord(
        org=org,
        repo=repo,
        number=int(raw['number']),
        title=raw.get('title') or "",
        url=raw.get('html_url') or "",
        state=raw.get('state') or "",
        creator=_login(raw.get('user')),
        assignees=tuple(_login(a) for a in raw.get('assignees') or [] if _login(a)),
        created_at=parse_timestamp(raw['created_at']),
        closed_at=parse_timestamp(raw.get('closed_at')),
        is_bug=is_bug,
        type=issue_type,
    )


# ============================================================================
# TIMELINE NORMALIZATION
# ============================================================================

def normalize_rest_event(raw: Dict) -> Optional[TimelineEvent]:
    """
    Normalize a REST timeline entry.

    Returns:
        TimelineEvent for status changes and legacy project-card events,
        None for everything else (labels, comments, cross references...)
    """
    event = raw.get('event')
    at = parse_timestamp(raw.get('created_at'))
    if at is None:
        return None
    actor = _login(raw.get('actor'))

    if event in STATUS_KINDS:
        return TimelineEvent(kind=event, at=at, actor=actor, scheme='status')

    kind = LEGACY_EVENT_KINDS.get(event)
    if kind is None:
        return None

    card = raw.get('project_card') or {}
    project = raw.get('project') or {}
    board_id = card.get('project_id') or project.get('id') or ""
    column_id = card.get('column_id')
    return TimelineEvent(
        kind=kind,
        at=at,
        actor=actor,
        scheme='legacy',
        board_id=str(board_id) if board_id else "",
        board_name=project.get('name') or "",
        column_id=int(column_id) if column_id else None,
        from_stage=card.get('previous_column_name') or raw.get('previous_project_column_name') or "",
        to_stage="" if kind == 'removed' else (card.get('column_name') or raw.get('project_column_name') or ""),
    )


def normalize_graphql_event(node: Dict) -> Optional[TimelineEvent]:
    """Normalize a GraphQL timeline item (status changes and Projects v2 events)"""
    kind = MODERN_EVENT_KINDS.get(node.get('__typename', ''))
    at = parse_timestamp(node.get('createdAt'))
    if kind is None or at is None:
        return None
    actor = _login(node.get('actor'))

    if kind in STATUS_KINDS:
        return TimelineEvent(kind=kind, at=at, actor=actor, scheme='status')

    project = node.get('project') or {}
    board_id = project.get('fullDatabaseId') or project.get('databaseId') or project.get('id') or ""
    if not board_id:
        return None
    return TimelineEvent(
        kind=kind,
        at=at,
        actor=actor,
        scheme='modern',
        board_id=str(board_id),
        board_name=project.get('title') or "",
        from_stage=(node.get("previousStatus") or "") if kind == "moved" else "",
        to_stage=(node.get("status") or "") if kind == "moved" else "",
    )


# ============================================================================
# BOARD / COLUMN NAME RESOLUTION
# ============================================================================

_PROJECT_URL_ID = re.compile(r'/projects/(\d+)$')


class BoardNameCache:
    """
    Read-through cache for legacy column and board names.

    Failed lookups are cached too (as None) so a missing column id costs
    one request per run. The backing mapping can be injected to share or
    persist entries.
    """

    def __init__(self, fetch_column: Callable[[int], Dict], fetch_board: Callable[[str], Dict],
                 backing: Optional[MutableMapping] = None):
        self._fetch_column = fetch_column
        self._fetch_board = fetch_board
        self._entries = backing if backing is not None else {}
        self.lookups = 0

    def _load(self, key: Tuple[str, Any], fetch: Callable[[], Dict]) -> Dict:
        if key in self._entries:
            value = self._entries[key]
            if value is None:
                raise LookupMiss(key[0], key[1], "cached miss")
            return value

        self.lookups += 1
        try:
            value = fetch() or None
        except UpstreamError as e:
            self._entries[key] = None
            raise LookupMiss(key[0], key[1], str(e)) from e
        self._entries[key] = value
        if value is None:
            raise LookupMiss(key[0], key[1], "empty response")
        return value

    def resolve_column(self, column_id: int) -> Tuple[str, str]:
        """
        Resolve a legacy column id.

        Returns:
            (column name, parent board id)

        Raises:
            LookupMiss: if the column can't be fetched (now or earlier in the run)
        """
        column = self._load(('column', column_id), lambda: self._fetch_column(column_id))
        board_id = column.get('project_id')
        if not board_id:
            match = _PROJECT_URL_ID.search(column.get('project_url') or '')
            board_id = match.group(1) if match else ""
        return column.get('name') or "", str(board_id) if board_id else ""

    def resolve_board(self, board_id: str) -> str:
        """Resolve a legacy board id to its name"""
        board = self._load(('board', str(board_id)), lambda: self._fetch_board(board_id))
        return board.get('name') or board.get('title') or ""


# ============================================================================
# AGGREGATION
# ============================================================================

def _resolve_board_event(event: TimelineEvent, resolver: Optional[BoardNameCache]) -> Tuple[str, str, str]:
    """Fill in board id, board name and target status of a legacy event where possible"""
    board_id, board_name, to_stage = event.board_id, event.board_name, event.to_stage
    if event.scheme != 'legacy' or resolver is None:
        return board_id, board_name, to_stage

    if event.column_id and (not board_id or (not to_stage and event.kind != 'removed')):
        try:
            column_name, column_board = resolver.resolve_column(event.column_id)
            board_id = board_id or column_board
            if event.kind != 'removed':
                to_stage = to_stage or column_name
        except LookupMiss:
            pass

    if board_id and not board_name:
        try:
            board_name = resolver.resolve_board(board_id)
        except LookupMiss:
            pass

    return board_id, board_name, to_stage


def order_events(events: List[TimelineEvent]) -> List[TimelineEvent]:
    """Drop exact duplicates and sort by time, status changes before board moves"""
    unique = list(dict.fromkeys(events))
    return sorted(unique, key=lambda e: (e.at, KIND_PRIORITY.get(e.kind, 9)))


def aggregate_lifecycle(record: IssueRecord, events: List[TimelineEvent],
                        resolver: Optional[BoardNameCache] = None) -> IssueLifecycle:
    """
    Reconstruct an issue's lifecycle from its merged timeline.

    Args:
        record: The issue's creation record
        events: Unordered, possibly duplicated events from both feeds
        resolver: Cache used to resolve legacy column ids

    Returns:
        IssueLifecycle with the status history seeded by a synthetic "opened"
    """
    lifecycle = IssueLifecycle(record=record)
    lifecycle.status_history.append(StatusEvent('opened', record.created_at, record.creator))

    is_open = True
    placements: Dict[str, Dict[str, Any]] = {}

    for event in order_events(events):
        if event.kind in STATUS_KINDS:
            if event.kind == 'closed':
                if not is_open:
                    lifecycle.unmatched_closes += 1
                is_open = False
                if not lifecycle.committer and event.actor:
                    lifecycle.committer = event.actor
            else:
                is_open = True
            lifecycle.status_history.append(StatusEvent(event.kind, event.at, event.actor))
            continue

        board_id, board_name, to_stage = _resolve_board_event(event, resolver)
        lifecycle.board_history.append(BoardMoveEvent(
            board_id=board_id,
            board_name=board_name,
            from_stage=event.from_stage,
            to_stage=to_stage,
            at=event.at,
            actor=event.actor,
            kind=event.kind,
        ))

        if not board_id:
            continue
        current = placements.setdefault(board_id, {'present': False, 'name': board_name, 'status': ''})
        current['name'] = board_name or current['name']
        if event.kind == 'removed':
            current['present'] = False
        else:
            current['present'] = True
            if event.kind == 'moved' or to_stage:
                current['status'] = to_stage

    lifecycle.current_placements = [
        BoardPlacement(board_id, state['name'], state['status'])
        for board_id, state in placements.items()
        if state['present']
    ]
    return lifecycle


def rebuild_current_placements(board_history: List[BoardMoveEvent]) -> List[BoardPlacement]:
    """Recompute current placements from a stored board-move history"""
    placements: Dict[str, BoardPlacement] = {}
    for event in sorted(board_history, key=lambda e: (e.at, KIND_PRIORITY.get(e.kind, 9))):
        if not event.board_id:
            continue
        if event.kind == 'removed':
            placements.pop(event.board_id, None)
            continue
        previous = placements.get(event.board_id)
        status = event.to_stage if event.kind == 'moved' or event.to_stage else (previous.status if previous else "")
        placements[event.board_id] = BoardPlacement(event.board_id, event.board_name, status)
    return list(placements.values())


# ============================================================================
# PULL REQUESTS
# ============================================================================

@dataclass(frozen=True)
class PullRequestRecord:
    org: str
    repo: str
    number: int
    title: str
    url: str
    state: str
    created_at: datetime
    closed_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None
    creator: str = ""


@dataclass(frozen=True)
class ReviewRecord:
    org: str
    repo: str
    number: int
    state: str
    submitted_at: Optional[datetime] = None
    user: str = ""


def pull_request_from_api(org: str, repo: str, raw: Dict) -> PullRequestRecord:
    return PullRequestRecord(
        org=org,
        repo=repo,
        number=int(raw['number']),
        title=raw.get('title') or "",
        url=raw.get('html_url') or "",
        state=raw.get('state') or "",
        created_at=parse_timestamp(raw['created_at']),
        closed_at=parse_timestamp(raw.get('closed_at')),
        merged_at=parse_timestamp(raw.get('merged_at')),
        creator=_login(raw.get('user')),
    )


def review_from_api(org: str, repo: str, number: int, raw: Dict) -> ReviewRecord:
    return ReviewRecord(
        org=org,
        repo=repo,
        number=int(number),
        state=(raw.get('state') or "").upper(),
        submitted_at=parse_timestamp(raw.get('submitted_at')),
        user=_login(raw.get('user')),
    )
