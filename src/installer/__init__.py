"""Installation planning and execution."""

from .engine import EngineReport, InstallEngine, OperationResult, apply_plan
from .planner import Operation, OperationKind, Plan, Planner
from .records import InstalledPackageRecord, RecordStore

__all__ = [
    "EngineReport",
    "InstallEngine",
    "InstalledPackageRecord",
    "Operation",
    "OperationKind",
    "OperationResult",
    "Plan",
    "Planner",
    "RecordStore",
    "apply_plan",
]
