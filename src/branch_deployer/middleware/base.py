"""Middleware handler contract."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Awaitable, Callable, Optional, Protocol

from branch_deployer.core.exceptions import ConfigurationError

AfterSwapTask = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class Done:
    """Successful handler result, optionally carrying deferred after-swap work.

    ``Done()`` is plain success. ``Done(task)`` asks the lifecycle manager to
    await ``task()`` once the new version is live; if it raises, the swap is
    reversed.
    """

    after_swap: Optional[AfterSwapTask] = None


class MiddlewareHandler(Protocol):
    """A named pipeline step.

    Handlers signal failure by raising ``MiddlewareError`` (or
    ``ConfigurationError`` for malformed ``data``).
    """

    async def __call__(self, branch: str, target_dir: Path, data: Any) -> Optional[Done]: ...


def resolve_in_target(target_dir: Path, entry: Any, owner: str) -> Path:
    """Resolve a recipe-supplied relative path, refusing anything outside the target."""
    if not isinstance(entry, str) or not entry:
        raise ConfigurationError(f"{owner}: Invalid path entry {entry!r}")
    relative = PurePosixPath(entry)
    if relative.is_absolute() or ".." in relative.parts:
        raise ConfigurationError(f"{owner}: Path escapes the target: {entry}")
    return target_dir.joinpath(*relative.parts)
