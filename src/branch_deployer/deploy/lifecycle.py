"""Per-branch deployment state machine.

One branch goes through::

    START -> TEMP_CREATED -> PULLED -> SUBMODULES_UPDATED -> MIDDLEWARE_RUN
          -> SWAPPED -> CALLBACKS_RUN -> DONE

Any step can end in FAILED. A failing after-swap callback takes the
ROLLED_BACK path: the swap is reversed so the previous version is live again.

Until SWAPPED the live directory is never touched; everything happens in the
temp identity. The swap is two renames (live -> rollback, temp -> live).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

import structlog

from branch_deployer.core.exceptions import DeployerError, PostSwapError
from branch_deployer.deploy.targets import TargetIdentity, TargetLayout
from branch_deployer.middleware.base import AfterSwapTask
from branch_deployer.middleware.pipeline import MiddlewarePipeline
from branch_deployer.repository.gateway import RepositoryGateway
from branch_deployer.utils.logging import bind_run_context, clear_branch_context
from branch_deployer.utils.timing import PhaseTimings

logger = structlog.get_logger()

REMOTE_NAME = "origin"

LIVE = TargetIdentity.LIVE
TEMP = TargetIdentity.TEMP
ROLLBACK = TargetIdentity.ROLLBACK


class LifecycleState(str, Enum):
    START = "start"
    TEMP_CREATED = "temp_created"
    PULLED = "pulled"
    SUBMODULES_UPDATED = "submodules_updated"
    MIDDLEWARE_RUN = "middleware_run"
    SWAPPED = "swapped"
    CALLBACKS_RUN = "callbacks_run"
    DONE = "done"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class BranchRun:
    """Progress record of one branch through the state machine."""

    branch: str
    state: LifecycleState = LifecycleState.START
    history: List[LifecycleState] = field(default_factory=lambda: [LifecycleState.START])
    error: Optional[str] = None

    def transition(self, state: LifecycleState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("Lifecycle transition", state=state.value)

    def fail(self, error: str, state: LifecycleState = LifecycleState.FAILED) -> None:
        self.error = error
        self.transition(state)

    @property
    def succeeded(self) -> bool:
        return self.state == LifecycleState.DONE


class TargetLifecycleManager:
    """Drives branches through the deployment state machine, one at a time."""

    def __init__(
        self,
        gateway: RepositoryGateway,
        layout: TargetLayout,
        source_url: str,
        pipeline: MiddlewarePipeline,
        keep_failed_temp: bool = False,
    ):
        self.gateway = gateway
        self.layout = layout
        self.source_url = source_url
        self.pipeline = pipeline
        self.keep_failed_temp = keep_failed_temp

    async def deploy(self, branch: str) -> BranchRun:
        """Build the branch in a temp target, swap it live, run after-swap work.

        Never raises for branch-level failures; the returned record carries
        the final state and error.
        """
        run = BranchRun(branch=branch)
        timings = PhaseTimings(branch=branch)
        bind_run_context(branch=branch)
        logger.info("Deploying branch")
        try:
            callbacks = await self._build(run, timings)
            if run.state != LifecycleState.MIDDLEWARE_RUN:
                return run
            with timings.phase("swap"):
                if not self._swap(run):
                    return run
            with timings.phase("callbacks"):
                await self._run_callbacks(run, callbacks)
            if run.state == LifecycleState.CALLBACKS_RUN:
                self._cleanup_rollback(run)
            return run
        finally:
            timings.finish()
            logger.debug("Branch timings", **timings.to_dict())
            if run.succeeded:
                logger.info("Branch deployed")
            else:
                logger.error("Branch deployment failed", state=run.state.value, error=run.error)
            clear_branch_context()

    async def remove(self, branch: str) -> BranchRun:
        """Remove every on-disk identity of a deleted branch."""
        run = BranchRun(branch=branch)
        bind_run_context(branch=branch)
        try:
            removed = False
            for identity in (LIVE, TEMP, ROLLBACK):
                removed = self.layout.remove(branch, identity) or removed
            run.transition(LifecycleState.DONE)
            logger.info("Branch target removed" if removed else "Branch target already absent")
        except OSError as exc:
            logger.exception("Failed to remove branch target")
            run.fail(f"Failed to remove target: {exc}")
        finally:
            clear_branch_context()
        return run

    def _recover_stale(self, branch: str) -> None:
        """Clear leftovers of an interrupted earlier run before starting."""
        if self.layout.exists(branch, ROLLBACK):
            if self.layout.exists(branch, LIVE):
                logger.warning("Removing stale rollback target")
                self.layout.remove(branch, ROLLBACK)
            else:
                # Interrupted between the two swap renames
                logger.warning("Restoring live target from stale rollback")
                self.layout.move(branch, ROLLBACK, LIVE)
        if self.layout.remove(branch, TEMP):
            logger.warning("Removed stale temp target")

    async def _build(self, run: BranchRun, timings: PhaseTimings) -> List[AfterSwapTask]:
        """Steps up to MIDDLEWARE_RUN, all inside the temp identity.

        Returns the after-swap callbacks the pipeline registered.
        """
        branch = run.branch
        temp = self.layout.path(branch, TEMP)
        callbacks: List[AfterSwapTask] = []

        try:
            with timings.phase("temp_create"):
                self._recover_stale(branch)
                temp.mkdir(parents=True)
                await self.gateway.init(temp)
                await self.gateway.add_remote(temp, REMOTE_NAME, self.source_url)
            run.transition(LifecycleState.TEMP_CREATED)

            with timings.phase("pull"):
                await self.gateway.pull(temp, REMOTE_NAME, branch, on_progress=self._progress)
            run.transition(LifecycleState.PULLED)

            with timings.phase("submodules"):
                await self.gateway.update_submodules(temp, on_progress=self._progress)
            run.transition(LifecycleState.SUBMODULES_UPDATED)

            with timings.phase("middleware"):
                callbacks = await self.pipeline.run(branch, temp)
            run.transition(LifecycleState.MIDDLEWARE_RUN)
        except DeployerError as exc:
            logger.error("Branch step failed", state=run.state.value, error=str(exc), code=exc.code)
            run.fail(str(exc))
            self._discard_temp(branch)
        except Exception as exc:
            logger.exception("Branch step crashed", state=run.state.value)
            run.fail(f"{type(exc).__name__}: {exc}")
            self._discard_temp(branch)
        return callbacks

    def _swap(self, run: BranchRun) -> bool:
        branch = run.branch
        conflict = self.layout.nesting_conflict(branch)
        if conflict is not None:
            logger.error("Live target overlaps another target, not swapping", conflict=str(conflict))
            run.fail(f"Live target {self.layout.path(branch)} overlaps another target at {conflict}")
            self._discard_temp(branch)
            return False

        had_live = self.layout.exists(branch, LIVE)
        try:
            if had_live:
                self.layout.move(branch, LIVE, ROLLBACK)
            self.layout.move(branch, TEMP, LIVE)
        except OSError as exc:
            logger.exception("Swap failed")
            if had_live and not self.layout.exists(branch, LIVE):
                try:
                    self.layout.move(branch, ROLLBACK, LIVE)
                except OSError:
                    logger.exception("Could not restore live target, it is still under rollback")
            run.fail(f"Swap failed: {exc}")
            self._discard_temp(branch)
            return False
        run.transition(LifecycleState.SWAPPED)
        logger.info("Target swapped live", replaced_previous=had_live)
        return True

    async def _run_callbacks(self, run: BranchRun, callbacks: List[AfterSwapTask]) -> None:
        for index, callback in enumerate(callbacks):
            try:
                await callback()
            except Exception as exc:
                if isinstance(exc, PostSwapError):
                    error = str(exc)
                else:
                    logger.exception("After-swap callback crashed", callback=index + 1)
                    error = f"After-swap callback crashed: {type(exc).__name__}: {exc}"
                logger.error("After-swap callback failed", callback=index + 1, of=len(callbacks), error=error)
                self._rollback(run, error, failed_index=index)
                return
        run.transition(LifecycleState.CALLBACKS_RUN)

    def _rollback(self, run: BranchRun, error: str, failed_index: int) -> None:
        """Reverse the swap after a post-swap failure."""
        branch = run.branch
        try:
            self.layout.move(branch, LIVE, TEMP)
            if self.layout.exists(branch, ROLLBACK):
                self.layout.move(branch, ROLLBACK, LIVE)
            self.layout.remove(branch, TEMP)
        except OSError as exc:
            logger.exception("Rollback failed, target needs manual attention")
            run.fail(f"{error}; rollback failed: {exc}")
            return

        logger.warning(
            "After-swap side effects were not rolled back",
            failed_callback=failed_index + 1,
            callbacks_completed=failed_index,
            hint="External actions already performed (proxy reload, process restart) "
                 "still reflect the new version; re-run or restart manually",
        )
        run.fail(error, state=LifecycleState.ROLLED_BACK)
        logger.info("Previous version restored")

    def _cleanup_rollback(self, run: BranchRun) -> None:
        try:
            self.layout.remove(run.branch, ROLLBACK)
        except OSError:
            # The new version is live and confirmed; a leftover rollback is
            # cleared by the next run of this branch.
            logger.exception("Failed to remove rollback target")
        run.transition(LifecycleState.DONE)

    def _discard_temp(self, branch: str) -> None:
        if self.keep_failed_temp:
            logger.warning("Keeping failed temp target", path=str(self.layout.path(branch, TEMP)))
            return
        try:
            self.layout.remove(branch, TEMP)
        except OSError:
            logger.exception("Failed to remove temp target", path=str(self.layout.path(branch, TEMP)))

    @staticmethod
    def _progress(line: str) -> None:
        if line:
            logger.debug("git", line=line)
