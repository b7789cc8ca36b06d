"""Persisted branch state: the branch -> commit map recorded after a run."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Mapping

import structlog

from branch_deployer.core.exceptions import StateStoreError
from branch_deployer.core.models import BranchState

logger = structlog.get_logger()


class BranchStateStore:
    """Reads and writes the branch state file stored in the target root."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> BranchState:
        """Load the previous branch state.

        A missing, unreadable or corrupt file is treated as empty state so the
        next run simply redeploys every branch.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No previous branch state", path=str(self.path))
            return BranchState()
        except OSError as exc:
            logger.warning("Branch state unreadable, using empty state", path=str(self.path), error=str(exc))
            return BranchState()

        try:
            data = json.loads(raw)
        except ValueError as exc:
            logger.warning("Branch state corrupt, using empty state", path=str(self.path), error=str(exc))
            return BranchState()

        if not isinstance(data, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in data.items()
        ):
            logger.warning("Branch state has unexpected shape, using empty state", path=str(self.path))
            return BranchState()

        return BranchState(data)

    def save(self, state: Mapping[str, str]) -> None:
        """Overwrite the state file with the given map.

        The file is written next to its final location and moved into place,
        so a crash never leaves a half-written state file behind.
        """
        payload = json.dumps(dict(sorted(state.items())), indent=2) + "\n"
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise StateStoreError(f"Failed to store branch state at {self.path}: {exc}") from exc
        logger.info("Branch state stored", path=str(self.path), branches=len(state))
