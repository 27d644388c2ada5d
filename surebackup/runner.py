"""Run coordinator: select, provision, restore and verify, clean up."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from surebackup.catalog.errors import AuthenticationError
from surebackup.cleanup import CleanupManager
from surebackup.config import RunConfig
from surebackup.context import RunContext
from surebackup.models.restore import RestorePoint
from surebackup.models.verification import VerificationResult
from surebackup.orchestrator import RestoreOrchestrator, restored_vm_name
from surebackup.polling import RunCancelledError
from surebackup.provisioner import EnvironmentProvisioner
from surebackup.selector import RestorePointSelector
from surebackup.verification import VerificationPipeline

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class RunCoordinator:
    """Coordinates one verification run over the selected restore points."""

    config: RunConfig

    async def run(self, context: RunContext) -> Sequence[VerificationResult]:
        """Test every selected restore point and return verdicts in order.

        An empty candidate set completes normally with no results.

        Raises:
            AuthenticationError: If the catalog cannot be authenticated
            ProvisioningError: If the test environment cannot be created
            RunCancelledError: If the run was cancelled

        """
        await context.catalog.authenticate()

        selector = RestorePointSelector(
            catalog=context.catalog,
            cloud_job_keywords=self.config.cloud_job_keywords,
        )
        candidates = await selector.select_candidates(
            max_age_days=self.config.max_restore_point_age_days,
            job_name_filter=self.config.backup_job_filter,
            max_count=self.config.max_vms_to_test,
        )
        if not candidates:
            log.info("No restore points eligible for testing")
            return []

        if context.cancelled:
            raise RunCancelledError("Run cancelled before provisioning")

        provisioner = EnvironmentProvisioner(platform=context.platform)
        context.environment = await provisioner.provision(
            self.config.test_region, self.config.test_network_cidr
        )

        try:
            results = await self._test_all(context, candidates)
        finally:
            await CleanupManager(platform=context.platform).cleanup(
                context.environment, self.config.retain_test_environment
            )

        context.results.extend(results)
        return results

    async def _test_all(
        self, context: RunContext, candidates: Sequence[RestorePoint]
    ) -> Sequence[VerificationResult]:
        """Test candidates, at most ``max_concurrency`` at a time."""
        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        log.info(
            "Testing %d restore point(s) with concurrency %d",
            len(candidates),
            self.config.max_concurrency,
        )

        async def _guarded(point: RestorePoint) -> VerificationResult:
            async with semaphore:
                if context.cancelled:
                    raise RunCancelledError("Run cancelled")
                try:
                    return await self._test_one(context, point)
                except AuthenticationError:
                    context.cancel()
                    raise

        outcomes = await asyncio.gather(
            *(_guarded(point) for point in candidates), return_exceptions=True
        )
        return self._process_outcomes(candidates, outcomes)

    async def _test_one(
        self, context: RunContext, point: RestorePoint
    ) -> VerificationResult:
        log.info(
            "Testing %s from backup %s (restore point %s, %s)",
            point.vm_name,
            point.backup_name,
            point.restore_point_id,
            point.creation_time.isoformat(),
        )
        restore_result = await RestoreOrchestrator(config=self.config).restore(
            context, point
        )
        return await VerificationPipeline(config=self.config).verify(
            context, restore_result, point
        )

    def _process_outcomes(
        self,
        candidates: Sequence[RestorePoint],
        outcomes: Sequence[VerificationResult | BaseException],
    ) -> Sequence[VerificationResult]:
        """Turn per-VM exceptions into FAIL verdicts; re-raise run-fatal ones."""
        for fatal in (AuthenticationError, RunCancelledError):
            for outcome in outcomes:
                if isinstance(outcome, fatal):
                    raise outcome

        results: list[VerificationResult] = []
        for point, outcome in zip(candidates, outcomes, strict=True):
            if isinstance(outcome, VerificationResult):
                results.append(outcome)
            elif isinstance(outcome, Exception):
                log.error(
                    "Testing of %s failed: %s", point.vm_name, outcome, exc_info=outcome
                )
                results.append(
                    VerificationResult(
                        source_vm_name=point.vm_name,
                        test_vm_name=restored_vm_name(
                            point.vm_name, point.restore_point_id
                        ),
                        overall_result="FAIL",
                        details=f"Unexpected error: {outcome}",
                    )
                )
            else:
                raise outcome
        return results
