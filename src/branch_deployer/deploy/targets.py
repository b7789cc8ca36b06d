"""On-disk identities of a deployment target."""

from __future__ import annotations

import shutil
from enum import Enum
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger()

# Every deployed target is a git work tree
TARGET_MARKER = ".git"


class TargetIdentity(str, Enum):
    LIVE = "live"
    TEMP = "temp"
    ROLLBACK = "rollback"


class TargetLayout:
    """Maps (branch, identity) to a directory under the target root.

    Live targets sit directly under the root, keyed by branch name. Temp and
    rollback targets live under dot-prefixed namespace directories; git does
    not allow ref components starting with a dot, so no branch can collide
    with them. All three share a filesystem, which keeps the swap renames atomic.
    """

    def __init__(self, root: Path, temp_dirname: str = ".deploying", rollback_dirname: str = ".rollback"):
        self.root = root
        self._namespaces = {
            TargetIdentity.TEMP: temp_dirname,
            TargetIdentity.ROLLBACK: rollback_dirname,
        }

    def path(self, branch: str, identity: TargetIdentity = TargetIdentity.LIVE) -> Path:
        if identity == TargetIdentity.LIVE:
            return self.root / branch
        return self.root / self._namespaces[identity] / branch

    def exists(self, branch: str, identity: TargetIdentity) -> bool:
        return self.path(branch, identity).exists()

    def nesting_conflict(self, branch: str) -> Optional[Path]:
        """Find another target that would contain or be displaced by this branch's live target.

        Returns the enclosing target directory when ``root/feature`` is still
        live and ``feature/x`` is being deployed, or the live path itself when
        it is only a parent directory of other branches (``feature`` being
        deployed while ``feature/x`` is live). None when the branch fits.
        """
        live = self.path(branch)
        for parent in live.parents:
            if parent == self.root or self.root not in parent.parents:
                break
            if (parent / TARGET_MARKER).exists():
                return parent
        if live.is_dir() and not (live / TARGET_MARKER).exists() and any(live.iterdir()):
            return live
        return None

    def move(self, branch: str, source: TargetIdentity, dest: TargetIdentity) -> None:
        """Rename one identity of a target to another."""
        src = self.path(branch, source)
        dst = self.path(branch, dest)
        dst.parent.mkdir(parents=True, exist_ok=True)
        src.rename(dst)
        self._prune_empty_parents(src)
        logger.debug("Target moved", branch=branch, source=source.value, dest=dest.value)

    def remove(self, branch: str, identity: TargetIdentity) -> bool:
        """Delete one identity of a target. Returns False if it did not exist."""
        path = self.path(branch, identity)
        if not path.exists() and not path.is_symlink():
            return False
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        self._prune_empty_parents(path)
        return True

    def _prune_empty_parents(self, path: Path) -> None:
        # Branches like feature/x leave intermediate directories behind.
        parent = path.parent
        while parent != self.root and self.root in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent
