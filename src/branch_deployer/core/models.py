"""Core data models for Branch Deployer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, NamedTuple, Optional

from pydantic import BaseModel, Field, model_validator


class BranchState(Mapping[str, str]):
    """Immutable snapshot of branch name -> tip commit id."""

    __slots__ = ("_tips",)

    def __init__(self, tips: Optional[Mapping[str, str]] = None):
        self._tips = MappingProxyType(dict(tips or {}))

    def __getitem__(self, branch: str) -> str:
        return self._tips[branch]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tips)

    def __len__(self) -> int:
        return len(self._tips)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return dict(self._tips) == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self._tips.items()))

    def __repr__(self) -> str:
        return f"BranchState({dict(self._tips)!r})"

    def to_dict(self) -> Dict[str, str]:
        return dict(self._tips)


class BranchUpdate(NamedTuple):
    """An updated branch: name, previous commit (None when unknown), new commit."""

    name: str
    previous: Optional[str]
    current: str


@dataclass
class ChangeSet:
    """Per-run classification of branches into created, updated and deleted."""

    created: List[str] = field(default_factory=list)
    updated: List[BranchUpdate] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.created or self.updated or self.deleted)


class OutcomeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    FAILED = "failed"


@dataclass
class BranchOutcome:
    """Result of processing a single branch."""

    branch: str
    kind: OutcomeKind
    previous: Optional[str] = None
    current: Optional[str] = None
    error: Optional[str] = None
    rolled_back: bool = False

    @property
    def failed(self) -> bool:
        return self.kind == OutcomeKind.FAILED


@dataclass
class DeployResult:
    """Aggregate result of one deployment run."""

    outcomes: List[BranchOutcome] = field(default_factory=list)
    state_saved: Optional[bool] = None

    def _names(self, kind: OutcomeKind) -> List[str]:
        return [o.branch for o in self.outcomes if o.kind == kind]

    @property
    def created(self) -> List[str]:
        return self._names(OutcomeKind.CREATED)

    @property
    def updated(self) -> List[BranchUpdate]:
        return [
            BranchUpdate(o.branch, o.previous, o.current or "")
            for o in self.outcomes
            if o.kind == OutcomeKind.UPDATED
        ]

    @property
    def deleted(self) -> List[str]:
        return self._names(OutcomeKind.DELETED)

    @property
    def failed(self) -> List[str]:
        return self._names(OutcomeKind.FAILED)

    @property
    def has_changes(self) -> bool:
        return any(not o.failed for o in self.outcomes)

    @property
    def success(self) -> bool:
        return not self.failed


class MiddlewareTask(BaseModel):
    """One entry of a target's middleware recipe."""

    name: str = Field(..., min_length=1, description="Registered handler name")
    data: Any = Field(None, description="Handler-specific payload")
    version: Optional[str] = Field(None, description="Only run for this branch")
    versions: Optional[List[str]] = Field(None, description="Only run for these branches")

    @model_validator(mode="before")
    @classmethod
    def accept_bare_name(cls, value: Any) -> Any:
        """A bare string entry is shorthand for a task without data."""
        if isinstance(value, str):
            return {"name": value}
        return value

    def applies_to(self, branch: str) -> bool:
        """Check whether this task is restricted away from the given branch."""
        if self.version is not None and self.version != branch:
            return False
        if self.versions is not None and branch not in self.versions:
            return False
        return True


class TargetConfig(BaseModel):
    """Per-target configuration file contents."""

    middleware: List[MiddlewareTask] = Field(default_factory=list)

    def tasks_for(self, branch: str) -> List[MiddlewareTask]:
        return [task for task in self.middleware if task.applies_to(branch)]
