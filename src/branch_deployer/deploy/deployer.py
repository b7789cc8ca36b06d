"""Deployment run: diff branches, deploy the changes, persist the new state."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Mapping, Optional

import structlog

from branch_deployer.core.config import Settings
from branch_deployer.core.exceptions import RepositoryError, StateStoreError, TargetRootError
from branch_deployer.core.models import (
    BranchOutcome,
    BranchState,
    ChangeSet,
    DeployResult,
    OutcomeKind,
)
from branch_deployer.deploy.differ import diff_branches
from branch_deployer.deploy.lifecycle import BranchRun, LifecycleState, TargetLifecycleManager
from branch_deployer.deploy.state import BranchStateStore
from branch_deployer.deploy.targets import TargetLayout
from branch_deployer.middleware.pipeline import MiddlewarePipeline
from branch_deployer.middleware.registry import MiddlewareRegistry
from branch_deployer.repository.gateway import RepositoryGateway
from branch_deployer.utils.logging import bind_run_context

logger = structlog.get_logger()


class Deployer:
    """Deploys every branch of a source repository into a target root.

    Branches are processed one after another. A failing branch never stops
    the run; it is reported and left at its previous state so the next run
    tries it again.
    """

    def __init__(
        self,
        source: Path,
        gateway: RepositoryGateway,
        registry: MiddlewareRegistry,
        settings: Optional[Settings] = None,
    ):
        self.source = source
        self.gateway = gateway
        self.registry = registry
        self.settings = settings or Settings()

    async def deploy_to(self, target_root: Path) -> DeployResult:
        """Run one deployment into ``target_root``.

        Raises TargetRootError when the root does not exist; every other
        failure is reported through the returned result.
        """
        if not target_root.is_dir():
            logger.error("The deployment process could not be initialized", target_root=str(target_root))
            raise TargetRootError(
                f"The deployment target root ({target_root}) does not exist.", code="missing_target_root"
            )

        bind_run_context(target_root=str(target_root))
        logger.info("The deployment process initiated", source=str(self.source), target_root=str(target_root))

        store = BranchStateStore(target_root / self.settings.state_filename)
        previous = store.load()
        current = BranchState(await self.gateway.list_branch_tips(self.source))
        changes = diff_branches(current, previous)

        result = await self.apply(changes, target_root, tips=current)

        if changes.is_empty:
            logger.info("Successfully deployed, however no changes were made")
            return result

        self._log_results(result)
        if not result.has_changes:
            logger.error("The deployment process failed, branch state left untouched", failed=result.failed)
            return result

        # Re-query: the source may have moved while branches were deployed.
        try:
            fresh = await self.gateway.list_branch_tips(self.source)
        except RepositoryError as exc:
            logger.warning("Could not re-list branches, storing the state this run started from", error=str(exc))
            fresh = current
        state = self._state_to_store(fresh, current, previous, result)
        try:
            store.save(state)
            result.state_saved = True
        except StateStoreError as exc:
            logger.warning(
                "Failed to store the new branch state, the next deployment will work with the old state",
                error=str(exc),
            )
            result.state_saved = False

        if result.success:
            logger.info("Successfully deployed")
        else:
            logger.error("The deployment process finished with failures", failed=result.failed)
        return result

    async def apply(
        self,
        changes: ChangeSet,
        target_root: Path,
        tips: Optional[Mapping[str, str]] = None,
    ) -> DeployResult:
        """Execute a change set branch by branch.

        ``tips`` supplies the commit ids reported for created branches.
        """
        tips = tips or {}
        layout = TargetLayout(
            target_root,
            temp_dirname=self.settings.temp_dirname,
            rollback_dirname=self.settings.rollback_dirname,
        )
        manager = TargetLifecycleManager(
            gateway=self.gateway,
            layout=layout,
            source_url=str(self.source.resolve()),
            pipeline=MiddlewarePipeline(self.registry, self.settings.config_filename),
            keep_failed_temp=self.settings.keep_failed_temp,
        )
        result = DeployResult()

        # Deletions first: a renamed branch (feature -> feature/x) lives
        # inside the directory of the branch it replaces.
        for branch in changes.deleted:
            if self.settings.prune_deleted:
                run = await manager.remove(branch)
                result.outcomes.append(self._outcome(run, OutcomeKind.DELETED, None))
            else:
                logger.info("Keeping target of deleted branch", branch=branch)
                result.outcomes.append(BranchOutcome(branch=branch, kind=OutcomeKind.DELETED))

        for branch in changes.created:
            run = await manager.deploy(branch)
            result.outcomes.append(self._outcome(run, OutcomeKind.CREATED, None, tips.get(branch)))

        for update in changes.updated:
            run = await manager.deploy(update.name)
            result.outcomes.append(self._outcome(run, OutcomeKind.UPDATED, update.previous, update.current))

        return result

    @staticmethod
    def _outcome(
        run: BranchRun,
        kind: OutcomeKind,
        previous: Optional[str],
        current: Optional[str] = None,
    ) -> BranchOutcome:
        if run.succeeded:
            return BranchOutcome(branch=run.branch, kind=kind, previous=previous, current=current)
        return BranchOutcome(
            branch=run.branch,
            kind=OutcomeKind.FAILED,
            previous=previous,
            current=current,
            error=run.error,
            rolled_back=run.state == LifecycleState.ROLLED_BACK,
        )

    @staticmethod
    def _state_to_store(
        fresh: Mapping[str, str],
        deployed: Mapping[str, str],
        previous: Mapping[str, str],
        result: DeployResult,
    ) -> Dict[str, str]:
        """The re-queried branch map, reconciled with what this run deployed.

        Branches that moved, appeared or vanished while the run was in
        progress are recorded as they were deployed, so the next run picks
        up the difference. A failed branch keeps its previous commit (or
        stays absent when it was never deployed) and is retried next run.
        """
        drifted = sorted(
            b for b in set(fresh) | set(deployed) if fresh.get(b) != deployed.get(b)
        )
        if drifted:
            logger.warning("Branches moved during deployment, the next run will pick them up", branches=drifted)

        state = {b: commit for b, commit in fresh.items() if deployed.get(b) == commit}
        for branch in drifted:
            if branch in deployed:
                state[branch] = deployed[branch]

        for branch in result.failed:
            if branch in previous:
                state[branch] = previous[branch]
            else:
                state.pop(branch, None)
        return state

    @staticmethod
    def _log_results(result: DeployResult) -> None:
        if result.created:
            logger.info("The following new deployment targets were created", branches=result.created)
        if result.updated:
            logger.info(
                "The following deployment targets were updated",
                branches=[f"{u.name} ({u.previous or 'EMPTY'} -> {u.current})" for u in result.updated],
            )
        if result.deleted:
            logger.info("The following deployment targets were deleted", branches=result.deleted)
        for outcome in result.outcomes:
            if outcome.failed:
                logger.error(
                    "Deployment target failed",
                    branch=outcome.branch,
                    error=outcome.error,
                    rolled_back=outcome.rolled_back,
                )
