"""Migration phase components."""

from tsmigrate.phases.abstract import PhaseResult
from tsmigrate.phases.compactor import Compactor
from tsmigrate.phases.copier import BulkCopier
from tsmigrate.phases.cutover import CutoverCoordinator
from tsmigrate.phases.indexer import Indexer
from tsmigrate.phases.interceptor import WriteInterceptor
from tsmigrate.phases.planner import SegmentPlanner, plan_windows

__all__ = [
    "BulkCopier",
    "Compactor",
    "CutoverCoordinator",
    "Indexer",
    "PhaseResult",
    "SegmentPlanner",
    "WriteInterceptor",
    "plan_windows",
]
