"""Per-target middleware pipeline."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Tuple

import structlog
from pydantic import ValidationError

from branch_deployer.core.exceptions import ConfigurationError, DeployerError, MiddlewareError
from branch_deployer.core.models import MiddlewareTask, TargetConfig
from branch_deployer.middleware.base import AfterSwapTask, Done, MiddlewareHandler
from branch_deployer.middleware.registry import MiddlewareRegistry

logger = structlog.get_logger()


class MiddlewarePipeline:
    """Runs the middleware recipe a target declares in its own config file.

    One pipeline instance lives for one run: each target's task list is read
    from its temp directory once and cached by branch name.
    """

    def __init__(self, registry: MiddlewareRegistry, config_filename: str):
        self.registry = registry
        self.config_filename = config_filename
        self._tasks: Dict[str, List[MiddlewareTask]] = {}

    def load_config(self, target_dir: Path) -> TargetConfig:
        """Parse the target's config file. A target without one has an empty recipe."""
        config_path = target_dir / self.config_filename
        if not config_path.exists():
            logger.info("No middleware config in target", path=str(config_path))
            return TargetConfig()

        try:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigurationError(
                f"Cannot read middleware config {config_path}: {exc}", code="bad_config"
            ) from exc

        if not isinstance(raw, dict):
            raise ConfigurationError(
                f"Middleware config {config_path} must be a JSON object", code="bad_config"
            )

        try:
            return TargetConfig.model_validate(raw)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid middleware config {config_path}: {exc}", code="bad_config"
            ) from exc

    def tasks_for(self, branch: str, target_dir: Path) -> List[MiddlewareTask]:
        if branch not in self._tasks:
            self._tasks[branch] = self.load_config(target_dir).tasks_for(branch)
        return self._tasks[branch]

    def _resolve(self, tasks: List[MiddlewareTask]) -> List[Tuple[MiddlewareTask, MiddlewareHandler]]:
        # Fail on unknown names before any handler has side effects.
        return [(task, self.registry.get(task.name)) for task in tasks]

    async def run(self, branch: str, target_dir: Path) -> List[AfterSwapTask]:
        """Run every applicable handler in recipe order.

        Returns the after-swap tasks handlers registered, in registration
        order. The first failing handler aborts the rest.
        """
        steps = self._resolve(self.tasks_for(branch, target_dir))
        callbacks: List[AfterSwapTask] = []

        for index, (task, handler) in enumerate(steps):
            logger.info("Running middleware", middleware=task.name, step=index + 1, of=len(steps))
            try:
                result = await handler(branch, target_dir, task.data)
            except DeployerError:
                logger.error("Middleware failed", middleware=task.name)
                raise
            except Exception as exc:
                logger.exception("Middleware crashed", middleware=task.name)
                raise MiddlewareError(f"Middleware {task.name} crashed: {exc}", code=task.name) from exc

            if result is None:
                result = Done()
            elif not isinstance(result, Done):
                raise MiddlewareError(
                    f"Middleware {task.name} returned {type(result).__name__}, expected Done",
                    code=task.name,
                )
            if result.after_swap is not None:
                callbacks.append(result.after_swap)

        return callbacks
