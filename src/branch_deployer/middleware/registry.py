"""Handler name -> implementation registry."""

from __future__ import annotations

from typing import Dict, List

import structlog

from branch_deployer.core.config import Settings
from branch_deployer.core.exceptions import ConfigurationError
from branch_deployer.middleware.base import MiddlewareHandler

logger = structlog.get_logger()


class MiddlewareRegistry:
    """Holds the middleware handlers available to target recipes.

    Built once at process start and injected into the deployer; it is only
    read while a run is in progress.
    """

    def __init__(self):
        self._handlers: Dict[str, MiddlewareHandler] = {}

    def register(self, name: str, handler: MiddlewareHandler) -> None:
        if name in self._handlers:
            raise ValueError(f"Middleware {name!r} is already registered")
        self._handlers[name] = handler

    def get(self, name: str) -> MiddlewareHandler:
        try:
            return self._handlers[name]
        except KeyError:
            raise ConfigurationError(f"Unknown middleware: {name}", code="unknown_middleware") from None

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def names(self) -> List[str]:
        return sorted(self._handlers)


def build_default_registry(settings: Settings, app_name: str) -> MiddlewareRegistry:
    """Register the built-in handlers under their recipe names."""
    from branch_deployer.middleware.compiler import ClosureCompiler
    from branch_deployer.middleware.directory_creator import DirectoryCreator
    from branch_deployer.middleware.restarter import RestartNotifier

    registry = MiddlewareRegistry()
    registry.register("directory-creator", DirectoryCreator())
    registry.register(
        "closure-compiler",
        ClosureCompiler(closure_root=settings.closure_root, java_bin=settings.java_bin),
    )
    registry.register(
        "restarter",
        RestartNotifier(app_name=app_name, base_url=settings.proxy_base_url),
    )
    logger.debug("Middleware registry built", handlers=registry.names())
    return registry
