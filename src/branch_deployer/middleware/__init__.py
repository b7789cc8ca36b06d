"""Pluggable post-pull steps configured per target."""

from .base import AfterSwapTask, Done, MiddlewareHandler
from .registry import MiddlewareRegistry, build_default_registry
from .pipeline import MiddlewarePipeline

__all__ = [
    "AfterSwapTask",
    "Done",
    "MiddlewareHandler",
    "MiddlewareRegistry",
    "MiddlewarePipeline",
    "build_default_registry",
]
