"""Middleware that creates empty directories inside a target."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog

from branch_deployer.core.exceptions import MiddlewareError
from branch_deployer.middleware.base import Done, resolve_in_target

logger = structlog.get_logger()


class DirectoryCreator:
    """Creates each listed relative path (with parents) under the target.

    Recipe data is a list of relative paths. Existing directories are left
    alone; anything other than a list is treated as nothing to do.
    """

    async def __call__(self, branch: str, target_dir: Path, data: Any) -> Done:
        if not isinstance(data, list):
            logger.info("DIRECTORY CREATOR: Nothing to create")
            return Done()

        for entry in data:
            path = resolve_in_target(target_dir, entry, "DIRECTORY CREATOR")
            if path.is_dir():
                continue
            try:
                path.mkdir(mode=0o775, parents=True, exist_ok=True)
            except OSError as exc:
                raise MiddlewareError(
                    f"DIRECTORY CREATOR: Failed to create {path}: {exc}", code="directory-creator"
                ) from exc
            logger.info("DIRECTORY CREATOR: Created", path=str(path))

        return Done()
