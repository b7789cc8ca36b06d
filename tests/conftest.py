"""
Pytest configuration and fixtures for deployer tests.
"""

from pathlib import Path
from typing import Dict, Optional, Set, Tuple

import pytest

from branch_deployer.core.config import Settings
from branch_deployer.core.exceptions import RepositoryError
from branch_deployer.deploy.targets import TargetLayout
from branch_deployer.middleware.registry import MiddlewareRegistry


class FakeGateway:
    """In-memory repository gateway.

    ``pull`` materialises a branch as a ``COMMIT`` file holding its tip plus
    any extra files registered for the branch in ``files``.
    """

    def __init__(self, tips: Optional[Dict[str, str]] = None):
        self.tips: Dict[str, str] = dict(tips or {})
        self.files: Dict[str, Dict[str, str]] = {}
        self.failures: Set[Tuple[str, str]] = set()
        self.calls = []

    def fail(self, op: str, branch: str = "*") -> None:
        self.failures.add((op, branch))

    def _check(self, op: str, branch: str = "*") -> None:
        if (op, branch) in self.failures or (op, "*") in self.failures:
            raise RepositoryError(f"git {op} failed", code=op, returncode=1)

    async def init(self, path: Path) -> None:
        self.calls.append(("init", path))
        self._check("init")
        path.mkdir(parents=True, exist_ok=True)
        (path / ".git").mkdir()

    async def add_remote(self, repo: Path, name: str, url: str) -> None:
        self.calls.append(("add_remote", repo, name, url))
        self._check("add_remote")

    async def pull(self, repo: Path, remote: str, branch: str, on_progress=None) -> None:
        self.calls.append(("pull", repo, remote, branch))
        self._check("pull", branch)
        if on_progress:
            on_progress(f"From source * branch {branch} -> FETCH_HEAD")
        (repo / "COMMIT").write_text(self.tips[branch])
        for rel, content in self.files.get(branch, {}).items():
            path = repo / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)

    async def update_submodules(self, repo: Path, on_progress=None) -> None:
        self.calls.append(("update_submodules", repo))
        self._check("update_submodules", repo.name)

    async def list_branch_tips(self, repo: Path) -> Dict[str, str]:
        self.calls.append(("list_branch_tips", repo))
        self._check("list_branch_tips")
        return dict(self.tips)


def snapshot(directory: Path) -> Dict[str, bytes]:
    """Relative path -> bytes for every file under a directory."""
    return {
        str(p.relative_to(directory)): p.read_bytes()
        for p in sorted(directory.rglob("*"))
        if p.is_file()
    }


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def target_root(tmp_path: Path) -> Path:
    root = tmp_path / "targets" / "app"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def source(tmp_path: Path) -> Path:
    src = tmp_path / "app.git"
    src.mkdir()
    return src


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def layout(target_root: Path) -> TargetLayout:
    return TargetLayout(target_root)


@pytest.fixture
def registry() -> MiddlewareRegistry:
    return MiddlewareRegistry()
