#!/usr/bin/env python3
"""
Stage Mapping

Maps an issue's board-move and status histories onto named process stages
using the per-board configuration, falling back to a default status
vocabulary for boards that have no configuration entry.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Union

from config import (
    DEFAULT_STAGE_VOCABULARY,
    NO_MATCH,
    BoardConfig,
    FlowConfig,
    Stage,
    normalize_status,
)
from lifecycle import BoardMoveEvent, IssueLifecycle, StatusEvent


@dataclass(frozen=True)
class StageTimestamps:
    """Stage-entry times for one issue; None means the stage was never reached"""
    lead_start: Optional[datetime] = None
    cycle_start: Optional[datetime] = None
    dev_start: Optional[datetime] = None
    review_start: Optional[datetime] = None
    qa_start: Optional[datetime] = None
    ready_start: Optional[datetime] = None
    waiting_to_prod_start: Optional[datetime] = None
    end: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Optional[datetime]]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class ComputedIssue:
    id: str
    name: str
    board_id: str
    board_name: str
    created_at: datetime
    stages: StageTimestamps
    is_bug: bool = False
    type: str = "task"

    @property
    def end(self) -> Optional[datetime]:
        return self.stages.end

    @property
    def is_open(self) -> bool:
        return self.stages.end is None


_DEFAULT_STATUSES: Dict[Stage, FrozenSet[str]] = {
    stage: frozenset(normalize_status(name) for name in names)
    for stage, names in DEFAULT_STAGE_VOCABULARY.items()
}


def accepted_statuses(board_config: Union[BoardConfig, object], stage: Stage) -> FrozenSet[str]:
    """Normalized statuses that mark entry into a stage on this board"""
    if board_config is NO_MATCH or not isinstance(board_config, BoardConfig):
        return _DEFAULT_STATUSES.get(stage, frozenset())
    return board_config.statuses_for(stage)


def first_move_to(board_events: Iterable[BoardMoveEvent], statuses: FrozenSet[str]) -> Optional[datetime]:
    """Earliest "moved" event whose target status is one of statuses"""
    if not statuses:
        return None
    matches = [
        event.at for event in board_events
        if event.kind == 'moved' and normalize_status(event.to_stage) in statuses
    ]
    return min(matches) if matches else None


def first_closed(status_events: Iterable[StatusEvent]) -> Optional[datetime]:
    closes = [event.at for event in status_events if event.type == 'closed']
    return min(closes) if closes else None


def _earliest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return min(present) if present else None


def compute_stage_timestamps(created_at: datetime, board_events: List[BoardMoveEvent],
                             status_events: List[StatusEvent],
                             board_config: Union[BoardConfig, object] = NO_MATCH) -> StageTimestamps:
    """
    Compute stage-entry timestamps and the completion time for one issue.

    Args:
        created_at: Issue creation time
        board_events: Board-move history restricted to the issue's board
        status_events: Status history (opened/closed/reopened)
        board_config: The board's configuration, or NO_MATCH for the default vocabulary

    Returns:
        StageTimestamps; end is None while the issue is still open
    """
    def stage_start(stage: Stage) -> Optional[datetime]:
        return first_move_to(board_events, accepted_statuses(board_config, stage))

    lead = stage_start(Stage.LEAD)
    cycle = stage_start(Stage.CYCLE)
    dev = stage_start(Stage.DEV)
    end = _earliest(stage_start(Stage.IN_PROD), first_closed(status_events))

    review = stage_start(Stage.REVIEW)
    qa = stage_start(Stage.QA)
    waiting_to_prod = stage_start(Stage.WAITING_TO_PROD)

    lead = lead or created_at
    # A skipped stage inherits the previous stage's start once a later stage is known
    reached_later = any(t is not None for t in (review, qa, waiting_to_prod, end))
    if cycle is None and (dev is not None or reached_later):
        cycle = lead
    if dev is None and reached_later:
        dev = cycle

    return StageTimestamps(
        lead_start=lead,
        cycle_start=cycle,
        dev_start=dev,
        review_start=review,
        qa_start=qa,
        ready_start=stage_start(Stage.READY),
        waiting_to_prod_start=waiting_to_prod,
        end=end,
    )


def primary_board(board_history: List[BoardMoveEvent]) -> Optional[BoardMoveEvent]:
    """The first board event by time; its board is the one an issue is measured on"""
    candidates = [event for event in board_history if event.board_id]
    if not candidates:
        return None
    return min(candidates, key=lambda event: event.at)


def compute_issue(lifecycle: IssueLifecycle, flow_config: FlowConfig) -> Optional[ComputedIssue]:
    """
    Compute an issue's stage timestamps on its primary board.

    Returns:
        ComputedIssue, or None if the board is excluded or the issue type is
        filtered out by the board's configuration
    """
    record = lifecycle.record
    first_event = primary_board(lifecycle.board_history)
    board_id = first_event.board_id if first_event else ""
    board_name = first_event.board_name if first_event else ""

    board_config = flow_config.lookup(board_id) if board_id else NO_MATCH
    if isinstance(board_config, BoardConfig):
        if board_config.exclude or not board_config.allows_type(record.type):
            return None
        board_name = board_name or board_config.name

    board_events = [event for event in lifecycle.board_history if event.board_id == board_id]
    if board_name == "":
        board_name = next((event.board_name for event in board_events if event.board_name), "")

    stages = compute_stage_timestamps(record.created_at, board_events, lifecycle.status_history, board_config)
    return ComputedIssue(
        id=record.id,
        name=record.title,
        board_id=board_id,
        board_name=board_name,
        created_at=record.created_at,
        stages=stages,
        is_bug=record.is_bug,
        type=record.type,
    )


def compute_issues(lifecycles: Iterable[IssueLifecycle], flow_config: FlowConfig) -> List[ComputedIssue]:
    """Compute every non-excluded issue"""
    computed = []
    for lifecycle in lifecycles:
        issue = compute_issue(lifecycle, flow_config)
        if issue is not None:
            computed.append(issue)
    return computed
