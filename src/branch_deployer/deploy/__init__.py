"""
Deployment engine.

- diff_branches: classify branches against the stored state
- BranchStateStore: branch -> commit map persisted in the target root
- TargetLayout: live / temp / rollback directories of a target
- TargetLifecycleManager: per-branch build, swap and rollback
- Deployer: one full run over a target root
"""

from .differ import diff_branches
from .state import BranchStateStore
from .targets import TargetIdentity, TargetLayout
from .lifecycle import BranchRun, LifecycleState, TargetLifecycleManager
from .deployer import Deployer

__all__ = [
    "diff_branches",
    "BranchStateStore",
    "TargetIdentity",
    "TargetLayout",
    "BranchRun",
    "LifecycleState",
    "TargetLifecycleManager",
    "Deployer",
]
