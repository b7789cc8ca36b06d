"""End-to-end tests for a deployment run against the in-memory gateway."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from structlog.testing import capture_logs

from branch_deployer.core.config import Settings
from branch_deployer.core.exceptions import PostSwapError, StateStoreError, TargetRootError
from branch_deployer.core.models import BranchUpdate
from branch_deployer.deploy.deployer import Deployer
from branch_deployer.deploy.state import BranchStateStore
from branch_deployer.middleware.base import Done
from branch_deployer.middleware.compiler import ClosureCompiler

from conftest import FakeGateway, snapshot

STATE_FILE = ".branch-deployer.json"


def read_state(target_root: Path):
    return json.loads((target_root / STATE_FILE).read_text())


def make_deployer(gateway, source, registry, settings=None) -> Deployer:
    return Deployer(source=source, gateway=gateway, registry=registry, settings=settings or Settings(_env_file=None))


@pytest.mark.asyncio
async def test_scenario_new_branch(source, registry, target_root: Path):
    gateway = FakeGateway({"main": "c1"})

    result = await make_deployer(gateway, source, registry).deploy_to(target_root)

    assert result.created == ["main"]
    assert result.updated == []
    assert result.deleted == []
    assert result.success
    assert result.state_saved is True
    assert (target_root / "main" / "COMMIT").read_text() == "c1"
    assert read_state(target_root) == {"main": "c1"}


@pytest.mark.asyncio
async def test_scenario_updated_branch(source, registry, target_root: Path):
    gateway = FakeGateway({"main": "c1"})
    deployer = make_deployer(gateway, source, registry)
    await deployer.deploy_to(target_root)

    gateway.tips["main"] = "c2"
    result = await deployer.deploy_to(target_root)

    assert result.created == []
    assert result.updated == [BranchUpdate("main", "c1", "c2")]
    assert (target_root / "main" / "COMMIT").read_text() == "c2"
    assert read_state(target_root) == {"main": "c2"}


@pytest.mark.asyncio
async def test_scenario_deleted_branch(source, registry, target_root: Path):
    gateway = FakeGateway({"main": "c1", "old": "c5"})
    deployer = make_deployer(gateway, source, registry)
    await deployer.deploy_to(target_root)

    del gateway.tips["old"]
    result = await deployer.deploy_to(target_root)

    assert result.deleted == ["old"]
    assert result.created == []
    assert result.updated == []
    assert not (target_root / "old").exists()
    assert (target_root / "main").is_dir()
    assert read_state(target_root) == {"main": "c1"}


@pytest.mark.asyncio
async def test_scenario_submodule_failure(source, registry, target_root: Path):
    BranchStateStore(target_root / STATE_FILE).save({"main": "c1"})
    before = (target_root / STATE_FILE).read_bytes()
    gateway = FakeGateway({"main": "c1", "broken": "c3"})
    gateway.fail("update_submodules", "broken")

    result = await make_deployer(gateway, source, registry).deploy_to(target_root)

    assert result.failed == ["broken"]
    assert result.created == []
    assert not result.success
    assert result.state_saved is None
    assert not (target_root / "broken").exists()
    assert (target_root / STATE_FILE).read_bytes() == before


@pytest.mark.asyncio
async def test_rerun_without_changes_is_idempotent(source, registry, target_root: Path):
    gateway = FakeGateway({"main": "c1", "feature/x": "c2"})
    deployer = make_deployer(gateway, source, registry)
    await deployer.deploy_to(target_root)
    before = snapshot(target_root)

    result = await deployer.deploy_to(target_root)

    assert result.outcomes == []
    assert result.success
    assert snapshot(target_root) == before
    pulls = [c for c in gateway.calls if c[0] == "pull"]
    assert len(pulls) == 2


@pytest.mark.asyncio
async def test_missing_target_root(source, registry, tmp_path: Path):
    gateway = FakeGateway({"main": "c1"})

    with pytest.raises(TargetRootError):
        await make_deployer(gateway, source, registry).deploy_to(tmp_path / "nope")

    assert gateway.calls == []


@pytest.mark.asyncio
async def test_failed_branch_is_isolated_and_retried(source, registry, target_root: Path):
    gateway = FakeGateway({"main": "c1", "bad": "c2"})
    gateway.fail("pull", "bad")
    deployer = make_deployer(gateway, source, registry)

    first = await deployer.deploy_to(target_root)

    assert first.created == ["main"]
    assert first.failed == ["bad"]
    assert first.state_saved is True
    assert read_state(target_root) == {"main": "c1"}

    gateway.failures.clear()
    second = await deployer.deploy_to(target_root)

    assert second.created == ["bad"]
    assert read_state(target_root) == {"bad": "c2", "main": "c1"}


@pytest.mark.asyncio
async def test_failed_update_keeps_previous_commit(source, registry, target_root: Path):
    gateway = FakeGateway({"main": "c1", "dev": "d1"})
    deployer = make_deployer(gateway, source, registry)
    await deployer.deploy_to(target_root)

    gateway.tips.update(main="c2", dev="d2")
    gateway.fail("pull", "dev")
    result = await deployer.deploy_to(target_root)

    assert [u.name for u in result.updated] == ["main"]
    assert result.failed == ["dev"]
    assert read_state(target_root) == {"dev": "d1", "main": "c2"}
    assert (target_root / "dev" / "COMMIT").read_text() == "d1"


@pytest.mark.asyncio
async def test_after_swap_failure_is_rolled_back(source, registry, target_root: Path):
    gateway = FakeGateway({"main": "c1"})
    deployer = make_deployer(gateway, source, registry)
    await deployer.deploy_to(target_root)

    async def refuse_restart(branch, target_dir, data):
        async def callback():
            raise PostSwapError("restart refused")

        return Done(callback)

    registry.register("restarter", refuse_restart)
    gateway.tips["main"] = "c2"
    gateway.files["main"] = {"deployer.json": json.dumps({"middleware": ["restarter"]})}
    with capture_logs() as logs:
        result = await deployer.deploy_to(target_root)

    assert result.failed == ["main"]
    assert result.outcomes[0].rolled_back
    assert result.outcomes[0].error == "restart refused"
    assert any(
        e["event"] == "After-swap side effects were not rolled back" and e["log_level"] == "warning" for e in logs
    )
    assert (target_root / "main" / "COMMIT").read_text() == "c1"
    assert read_state(target_root) == {"main": "c1"}


@pytest.mark.asyncio
async def test_state_write_failure_is_reported(source, registry, target_root: Path, monkeypatch):
    def refuse(self, state):
        raise StateStoreError("read-only filesystem")

    monkeypatch.setattr(BranchStateStore, "save", refuse)
    gateway = FakeGateway({"main": "c1"})

    result = await make_deployer(gateway, source, registry).deploy_to(target_root)

    assert result.created == ["main"]
    assert result.state_saved is False
    assert (target_root / "main").is_dir()


@pytest.mark.asyncio
async def test_branch_moving_during_run_is_picked_up_next_time(source, registry, target_root: Path):
    gateway = FakeGateway({"main": "c1"})
    original_pull = gateway.pull

    async def pull_then_push(repo, remote, branch, on_progress=None):
        await original_pull(repo, remote, branch, on_progress)
        gateway.tips["main"] = "c9"
        gateway.tips["late"] = "l1"

    gateway.pull = pull_then_push
    deployer = make_deployer(gateway, source, registry)

    await deployer.deploy_to(target_root)

    assert read_state(target_root) == {"main": "c1"}

    gateway.pull = original_pull
    result = await deployer.deploy_to(target_root)

    assert result.created == ["late"]
    assert result.updated == [BranchUpdate("main", "c1", "c9")]


@pytest.mark.asyncio
async def test_deleted_branch_kept_when_pruning_disabled(source, registry, target_root: Path):
    gateway = FakeGateway({"main": "c1", "old": "c5"})
    deployer = make_deployer(gateway, source, registry, Settings(_env_file=None, prune_deleted=False))
    await deployer.deploy_to(target_root)

    del gateway.tips["old"]
    result = await deployer.deploy_to(target_root)

    assert result.deleted == ["old"]
    assert (target_root / "old" / "COMMIT").read_text() == "c5"
    assert read_state(target_root) == {"main": "c1"}


@pytest.mark.asyncio
async def test_source_url_is_absolute(registry, target_root: Path, tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "repo.git").mkdir()
    gateway = FakeGateway({"main": "c1"})

    await make_deployer(gateway, Path("repo.git"), registry).deploy_to(target_root)

    remotes = [c for c in gateway.calls if c[0] == "add_remote"]
    assert remotes[0][3] == str(tmp_path.resolve() / "repo.git")


@pytest.mark.asyncio
async def test_branch_renamed_to_nested_name(source, registry, target_root: Path):
    gateway = FakeGateway({"feature": "c1"})
    deployer = make_deployer(gateway, source, registry)
    await deployer.deploy_to(target_root)

    gateway.tips = {"feature/x": "c2"}
    result = await deployer.deploy_to(target_root)

    assert result.deleted == ["feature"]
    assert result.created == ["feature/x"]
    assert result.success
    assert (target_root / "feature" / "x" / "COMMIT").read_text() == "c2"
    assert read_state(target_root) == {"feature/x": "c2"}

    again = await deployer.deploy_to(target_root)

    assert again.outcomes == []
    assert (target_root / "feature" / "x" / "COMMIT").read_text() == "c2"


@pytest.mark.asyncio
async def test_nested_branch_renamed_to_parent_name(source, registry, target_root: Path):
    gateway = FakeGateway({"feature/x": "c1"})
    deployer = make_deployer(gateway, source, registry)
    await deployer.deploy_to(target_root)

    gateway.tips = {"feature": "c2"}
    result = await deployer.deploy_to(target_root)

    assert result.success
    assert (target_root / "feature" / "COMMIT").read_text() == "c2"
    assert not (target_root / "feature" / "x").exists()
    assert read_state(target_root) == {"feature": "c2"}


@pytest.mark.asyncio
async def test_rename_into_kept_target_fails_without_losing_it(source, registry, target_root: Path):
    gateway = FakeGateway({"feature": "c1"})
    deployer = make_deployer(gateway, source, registry, Settings(_env_file=None, prune_deleted=False))
    await deployer.deploy_to(target_root)

    gateway.tips = {"feature/x": "c2"}
    result = await deployer.deploy_to(target_root)

    assert result.failed == ["feature/x"]
    assert (target_root / "feature" / "COMMIT").read_text() == "c1"
    assert not (target_root / "feature" / "x").exists()
    assert "feature/x" not in read_state(target_root)


@pytest.mark.asyncio
async def test_compiler_failure_leaves_live_and_state_untouched(source, registry, target_root: Path, tmp_path: Path):
    gateway = FakeGateway({"main": "c1"})
    deployer = make_deployer(gateway, source, registry)
    await deployer.deploy_to(target_root)
    live_before = snapshot(target_root / "main")
    state_before = (target_root / STATE_FILE).read_bytes()

    registry.register("closure-compiler", ClosureCompiler(closure_root=str(tmp_path / "closure")))
    gateway.tips["main"] = "c2"
    gateway.files["main"] = {
        "deployer.json": json.dumps(
            {"middleware": [{"name": "closure-compiler", "data": {"build/app.js": {"sources": ["js/app.js"]}}}]}
        )
    }
    with patch.object(ClosureCompiler, "_exec", new_callable=AsyncMock, return_value=(1, "ERROR - parse error")):
        result = await deployer.deploy_to(target_root)

    assert result.failed == ["main"]
    assert not result.outcomes[0].rolled_back
    assert result.state_saved is None
    assert snapshot(target_root / "main") == live_before
    assert (target_root / STATE_FILE).read_bytes() == state_before
    assert not (target_root / ".deploying").exists()
