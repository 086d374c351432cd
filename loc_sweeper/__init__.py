"""
loc-sweeper: per-language line-count snapshots of repositories, rendered as SVG cards.

    >>> from loc_sweeper import PipelineCoordinator, Settings, SnapshotStore
    >>> store = SnapshotStore("stats.db")
    >>> store.init_db()
    >>> coordinator = PipelineCoordinator.from_settings(Settings.from_env())
    >>> report = coordinator.run(store.all_projects())
"""

from .cloc import ClocAnalyzer, ClocConfig, parse_report
from .config import Settings
from .errors import (
    AnalyzerFailed,
    AnalyzerUnavailable,
    Cancelled,
    ConstraintViolation,
    CorruptWorkingTree,
    EmptySnapshot,
    MalformedReport,
    OutputFailed,
    RunFailed,
    SourceUnavailable,
    StatsError,
    StepTimeout,
    StoreUnavailable,
)
from .models import (
    Failure,
    LanguageBreakdown,
    LanguageMetric,
    Project,
    ProjectOutcome,
    RunReport,
    StatSnapshot,
    Success,
    WorkingTree,
)
from .pipeline import PipelineCoordinator
from .render import SvgRenderer, write_svg
from .store import SnapshotStore
from .workspace import WorkingTreeManager

__all__ = [
    'PipelineCoordinator',
    'WorkingTreeManager',
    'ClocAnalyzer',
    'ClocConfig',
    'parse_report',
    'SnapshotStore',
    'SvgRenderer',
    'write_svg',
    'Settings',

    'Project',
    'LanguageMetric',
    'LanguageBreakdown',
    'StatSnapshot',
    'WorkingTree',
    'Success',
    'Failure',
    'ProjectOutcome',
    'RunReport',

    'StatsError',
    'SourceUnavailable',
    'CorruptWorkingTree',
    'AnalyzerUnavailable',
    'AnalyzerFailed',
    'MalformedReport',
    'StoreUnavailable',
    'ConstraintViolation',
    'EmptySnapshot',
    'StepTimeout',
    'Cancelled',
    'OutputFailed',
    'RunFailed',
]

__version__ = '0.1.0'
