"""
Configuration module for the GitHub Flow Metrics Collector
Contains all configurable constants, environment helpers and the YAML
board configuration used to map project board statuses onto process stages.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Union

import yaml


# ============================================================================
# GITHUB API SETTINGS
# ============================================================================

GITHUB_API_BASE: str = "https://api.github.com"
GITHUB_GRAPHQL_URL: str = "https://api.github.com/graphql"
GITHUB_ACCEPT: str = "application/vnd.github+json"
GITHUB_API_VERSION: str = "2022-11-28"

# Fixed page size for every paginated listing
PAGE_SIZE: int = 100

# Request timeout in seconds
REQUEST_TIMEOUT: int = 30


# ============================================================================
# RATE LIMIT SETTINGS
# ============================================================================

# Added to every computed quota wait
RATE_SAFETY_MARGIN_SECONDS: float = 2.0

# Start pacing requests when fewer than this many requests remain
RATE_LOW_WATER: int = 100

# Upper bound for a single pacing delay
RATE_PACING_CAP_SECONDS: float = 2.0

# Minimum wait after a secondary rate limit that carries no Retry-After
SECONDARY_RATE_LIMIT_WAIT_SECONDS: float = 60.0

# Long sleeps are cut into slices so cancellation is noticed
SLEEP_SLICE_SECONDS: float = 1.0


# ============================================================================
# OUTPUT SETTINGS
# ============================================================================

DEFAULT_DATA_DIR: str = "data"
DEFAULT_CONFIG_PATH: str = "./config.yml"

# Minimum number of weeks before control limits are computed per block
CONTROL_CHART_BLOCK_WEEKS: int = 6

# Label used for the all-repositories rollup rows
ALL_REPOS_LABEL: str = "ALL"


# ============================================================================
# STAGES AND DEFAULT STATUS VOCABULARY
# ============================================================================

class Stage(str, Enum):
    """Logical process stages a board status can map to"""
    LEAD = "lead"
    CYCLE = "cycle"
    DEV = "dev"
    REVIEW = "review"
    QA = "qa"
    READY = "ready"
    WAITING_TO_PROD = "waiting_to_prod"
    IN_PROD = "in_prod"


# YAML keys for each stage's accepted board statuses
STAGE_CONFIG_KEYS: Dict[Stage, str] = {
    Stage.LEAD: 'lead_time_columns',
    Stage.CYCLE: 'cycle_time_columns',
    Stage.DEV: 'dev_start_columns',
    Stage.REVIEW: 'review_start_columns',
    Stage.QA: 'qa_start_columns',
    Stage.READY: 'put_in_ready_columns',
    Stage.WAITING_TO_PROD: 'waitingtoprod_start_columns',
    Stage.IN_PROD: 'inprod_start_columns',
}

# Statuses used when a board has no configuration entry
DEFAULT_STAGE_VOCABULARY: Dict[Stage, List[str]] = {
    Stage.LEAD: ['Backlog', 'Ready'],
    Stage.CYCLE: ['In Progress'],
    Stage.DEV: ['In Progress'],
    Stage.REVIEW: ['In Review'],
    Stage.QA: ['QA', 'In QA', 'Testing'],
    Stage.READY: ['Ready'],
    Stage.WAITING_TO_PROD: ['Done'],
    Stage.IN_PROD: ['Archive'],
}


# ============================================================================
# BOARD CONFIGURATION
# ============================================================================

class ConfigMissing(Exception):
    """Raised when no configuration is available for a file or a board"""
    pass


def normalize_status(name: Optional[str]) -> str:
    """Normalize a board status name for case-insensitive comparison."""
    return (name or '').strip().lower()


class _NoMatch:
    """Sentinel returned when a board has no configuration entry"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "NO_MATCH"


NO_MATCH = _NoMatch()


@dataclass(frozen=True)
class BoardConfig:
    """Stage mapping and filters for one project board"""
    board_id: str
    name: str = ""
    exclude: bool = False
    types: FrozenSet[str] = frozenset()
    stages: Dict[Stage, FrozenSet[str]] = field(default_factory=dict)

    def statuses_for(self, stage: Stage) -> FrozenSet[str]:
        """Normalized statuses accepted for a stage (empty when unconfigured)"""
        return self.stages.get(stage, frozenset())

    def allows_type(self, issue_type: str) -> bool:
        """Check the issue type against the board's type restriction"""
        if not self.types:
            return True
        return normalize_status(issue_type) in self.types

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'BoardConfig':
        stages = {}
        for stage, key in STAGE_CONFIG_KEYS.items():
            names = raw.get(key) or []
            if names:
                stages[stage] = frozenset(normalize_status(n) for n in names)
        return cls(
            board_id=str(raw.get('id', '')).strip(),
            name=str(raw.get('name') or ''),
            exclude=bool(raw.get('exclude', False)),
            types=frozenset(normalize_status(t) for t in raw.get('types') or []),
            stages=stages,
        )


@dataclass
class FlowConfig:
    """Organization settings and per-board stage mappings"""
    org: str = ""
    boards: Dict[str, BoardConfig] = field(default_factory=dict)

    def lookup(self, board_id: str) -> Union[BoardConfig, _NoMatch]:
        """Return the board's configuration or NO_MATCH"""
        return self.boards.get(str(board_id).strip(), NO_MATCH)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'FlowConfig':
        github = (raw or {}).get('github') or {}
        boards = {}
        for project in github.get('projects') or []:
            board = BoardConfig.from_dict(project)
            if board.board_id:
                boards[board.board_id] = board
        return cls(org=str(github.get('org') or ''), boards=boards)


def load_flow_config(path: Union[str, Path]) -> FlowConfig:
    """
    Load the YAML board configuration.

    Args:
        path: Path to the YAML file

    Returns:
        Parsed FlowConfig

    Raises:
        ConfigMissing: if the file does not exist
    """
    config_file = Path(path)
    if not config_file.exists():
        raise ConfigMissing(f"Configuration file not found: {config_file}")
    data = yaml.safe_load(config_file.read_text(encoding='utf-8')) or {}
    return FlowConfig.from_dict(data)


# ============================================================================
# ENVIRONMENT VARIABLE HELPERS
# ============================================================================

def get_github_token() -> str:
    """Get GitHub token from environment variables."""
    return os.getenv('GITHUB_TOKEN', '')

def get_config_path() -> str:
    """Get the board configuration path from environment variables with fallback."""
    return os.getenv('CONFIG_PATH', DEFAULT_CONFIG_PATH)

def get_data_dir() -> str:
    """Get the CSV output directory from environment variables with fallback."""
    return os.getenv('DATA_DIR', DEFAULT_DATA_DIR)


# ============================================================================
# CONFIGURATION VALIDATION
# ============================================================================

def validate_configuration() -> Dict[str, Any]:
    """Validate configuration and return status."""
    config_status = {
        'github_token': bool(get_github_token()),
        'config_path': get_config_path(),
        'config_exists': Path(get_config_path()).exists(),
        'data_dir': get_data_dir(),
        'issues': []
    }

    if not config_status['github_token']:
        config_status['issues'].append('GITHUB_TOKEN environment variable not set')

    # Board config is optional: unknown boards use the default vocabulary
    if not config_status['config_exists']:
        config_status['issues'].append(
            f"{config_status['config_path']} not found - default status vocabulary will be used"
        )

    return config_status


__all__ = [
    'GITHUB_API_BASE',
    'GITHUB_GRAPHQL_URL',
    'GITHUB_ACCEPT',
    'GITHUB_API_VERSION',
    'PAGE_SIZE',
    'REQUEST_TIMEOUT',
    'RATE_SAFETY_MARGIN_SECONDS',
    'RATE_LOW_WATER',
    'RATE_PACING_CAP_SECONDS',
    'SECONDARY_RATE_LIMIT_WAIT_SECONDS',
    'SLEEP_SLICE_SECONDS',
    'DEFAULT_DATA_DIR',
    'DEFAULT_CONFIG_PATH',
    'CONTROL_CHART_BLOCK_WEEKS',
    'ALL_REPOS_LABEL',
    'Stage',
    'STAGE_CONFIG_KEYS',
    'DEFAULT_STAGE_VOCABULARY',
    'ConfigMissing',
    'NO_MATCH',
    'BoardConfig',
    'FlowConfig',
    'normalize_status',
    'load_flow_config',
    'get_github_token',
    'get_config_path',
    'get_data_dir',
    'validate_configuration',
]
