"""
Simulation Worker

Consumes pending SimulationJobs.

State Flow: pending → processing → done | failed

- A job moves out of pending only through a conditional UPDATE that also
  requires status = 'pending'; two workers never claim the same job.
- Claims skip scenarios whose rerun lock is held.
- Each claimed job runs in its own session. For a non-dry-run job the ledger
  insert and the transition to done commit together, so done implies the
  ledger entry exists. On any error the transaction rolls back and the job
  is marked failed in a fresh transaction.
- There is no retry loop; failed jobs stay failed until requeued or rerun.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from classroom_sim.config import settings as default_settings, Settings
from classroom_sim.errors import (
    NotFound, OutcomeNotSet, JobNotPending, JobProcessingError, describe_exception
)
from classroom_sim.orm.classroom import Classroom
from classroom_sim.orm.scenario import Scenario, ScenarioOutcome
from classroom_sim.orm.simulation_job import SimulationJob, JobStatus
from classroom_sim.orm.variable_definition import VariableScope
from classroom_sim.services.access import SubmissionStore
from classroom_sim.services.job_service import JobService
from classroom_sim.services.ledger_service import LedgerService
from classroom_sim.services.outcome_calculator import OutcomeConfig, compute_outcome
from classroom_sim.services.variable_cache import ScenarioVariableCache, variable_cache
from classroom_sim.services.variable_schema import VariableSchema

logger = logging.getLogger(__name__)


class SimulationWorker:
    """
    Job consumer bound to a session factory.

    Args:
        session_factory: async_sessionmaker producing one session per job
        settings: runtime settings (batch size, concurrency, stale threshold)
        cache: scenario variable cache shared with the lifecycle
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[Settings] = None,
        cache: Optional[ScenarioVariableCache] = None
    ):
        if session_factory is None:
            from classroom_sim.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.cache = cache or variable_cache

    # =========================================================================
    # Claiming
    # =========================================================================

    async def claim_pending_jobs(self, limit: Optional[int] = None) -> List[int]:
        """
        Atomically move up to `limit` of the oldest pending jobs to processing.

        Returns the claimed job ids, oldest first.
        """
        limit = limit if limit is not None else self.settings.batch_limit
        if limit <= 0:
            return []

        now = datetime.utcnow()
        oldest_pending = (
            select(SimulationJob.id)
            .join(Scenario, Scenario.id == SimulationJob.scenario_id)
            .where(
                SimulationJob.status == JobStatus.PENDING.value,
                Scenario.rerun_lock.is_(None),
            )
            .order_by(SimulationJob.created_at, SimulationJob.id)
            .limit(limit)
            .correlate(None)
        )
        claim = (
            update(SimulationJob)
            .where(
                SimulationJob.id.in_(oldest_pending),
                SimulationJob.status == JobStatus.PENDING.value,
            )
            .values(
                status=JobStatus.PROCESSING.value,
                attempts=SimulationJob.attempts + 1,
                started_at=now,
                completed_at=None,
                error=None,
                updated_at=now,
            )
            .returning(SimulationJob.id, SimulationJob.created_at)
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as db:
            result = await db.execute(claim)
            rows = result.all()
            await db.commit()

        claimed = [row[0] for row in sorted(rows, key=lambda r: (r[1], r[0]))]
        if claimed:
            logger.info(f"Claimed {len(claimed)} jobs: {claimed}")
        return claimed

    async def _claim_job(self, db: AsyncSession, job_id: int) -> bool:
        now = datetime.utcnow()
        result = await db.execute(
            update(SimulationJob)
            .where(
                SimulationJob.id == job_id,
                SimulationJob.status == JobStatus.PENDING.value,
            )
            .values(
                status=JobStatus.PROCESSING.value,
                attempts=SimulationJob.attempts + 1,
                started_at=now,
                completed_at=None,
                error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return (result.rowcount or 0) == 1

    async def reclaim_stale_jobs(self, stale_after_seconds: Optional[int] = None) -> int:
        """
        Return jobs stuck in processing past the threshold to pending.

        A worker that died mid-job leaves its job in processing; nothing else
        would ever pick it up again.
        """
        seconds = stale_after_seconds if stale_after_seconds is not None else self.settings.job_stale_after_seconds
        if seconds is None or seconds <= 0:
            return 0
        cutoff = datetime.utcnow() - timedelta(seconds=seconds)

        async with self.session_factory() as db:
            result = await db.execute(
                update(SimulationJob)
                .where(
                    SimulationJob.status == JobStatus.PROCESSING.value,
                    SimulationJob.started_at < cutoff,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    started_at=None,
                    error=f"Reclaimed after {seconds}s in processing",
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        count = result.rowcount or 0
        if count:
            logger.warning(f"Reclaimed {count} stale processing jobs (older than {seconds}s)")
        return count

    # =========================================================================
    # Processing
    # =========================================================================

    async def process_pending_jobs(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Reclaim stale jobs, claim a batch and run it with bounded concurrency.

        Returns one {success, job_id, result | error} dict per claimed job.
        A failing job never aborts the batch.
        """
        await self.reclaim_stale_jobs()
        job_ids = await self.claim_pending_jobs(limit)
        if not job_ids:
            return []

        semaphore = asyncio.Semaphore(self.settings.effective_concurrency())

        async def run(job_id: int) -> Dict[str, Any]:
            async with semaphore:
                try:
                    return await self._run_claimed(job_id)
                except Exception as e:
                    logger.error(f"Job {job_id} could not be recorded as failed: {describe_exception(e)}")
                    return {"success": False, "job_id": job_id, "error": describe_exception(e)}

        results = await asyncio.gather(*(run(job_id) for job_id in job_ids))
        succeeded = sum(1 for r in results if r["success"])
        logger.info(f"Batch finished: {succeeded}/{len(results)} jobs succeeded")
        return list(results)

    async def process_job(self, job_id: int) -> Dict[str, Any]:
        """
        Claim and run a single job.

        Raises:
            NotFound: job does not exist
            JobNotPending: job is not pending
            JobProcessingError: computation or ledger write failed (job marked failed)
        """
        async with self.session_factory() as db:
            claimed = await self._claim_job(db, job_id)
            if not claimed:
                job = await JobService.get_job_by_id(db, job_id)
                if job is None:
                    raise NotFound("SimulationJob", job_id)
                raise JobNotPending(job_id, job.status)

        outcome = await self._run_claimed(job_id)
        if not outcome["success"]:
            raise JobProcessingError(job_id, outcome["error"])
        return outcome["result"]

    async def _run_claimed(self, job_id: int) -> Dict[str, Any]:
        async with self.session_factory() as db:
            try:
                result = await self._compute_and_record(db, job_id)
                return {"success": True, "job_id": job_id, "result": result}
            except Exception as e:
                await db.rollback()
                reason = describe_exception(e)
                logger.error(f"Job {job_id} failed: {reason}")
                await self._mark_failed(db, job_id, reason)
                return {"success": False, "job_id": job_id, "error": reason}

    async def _compute_and_record(self, db: AsyncSession, job_id: int) -> Dict[str, Any]:
        job = await JobService.get_job_by_id(db, job_id)
        if job is None:
            raise NotFound("SimulationJob", job_id)
        if job.status != JobStatus.PROCESSING.value:
            raise JobProcessingError(job_id, f"job is {job.status}, expected processing")

        scenario = await db.get(Scenario, job.scenario_id)
        if scenario is None:
            raise NotFound("Scenario", job.scenario_id)

        result = await db.execute(select(ScenarioOutcome).where(ScenarioOutcome.scenario_id == scenario.id))
        outcome = result.scalar_one_or_none()
        if outcome is None:
            raise OutcomeNotSet(scenario.id, action="processing jobs")

        submission = await SubmissionStore.get_submission(db, job.classroom_id, scenario.id, job.user_id)
        if submission is None:
            raise NotFound("Submission", f"{scenario.id}/{job.user_id}")

        classroom = await db.get(Classroom, job.classroom_id)
        if classroom is None:
            raise NotFound("Classroom", job.classroom_id)

        scenario_variables = await self.cache.get(db, scenario.id)
        submission_variables = await VariableSchema.validate_and_normalize(
            db, job.classroom_id, VariableScope.SUBMISSION, submission.variables or {}
        )
        prior = await LedgerService.get_prior_state(
            db, classroom, job.user_id, scenario.week, scenario_id=scenario.id
        )

        computed = compute_outcome(
            scenario_id=scenario.id,
            user_id=job.user_id,
            week=scenario.week,
            scenario_variables=scenario_variables,
            submission_variables=submission_variables,
            config=OutcomeConfig.from_model(outcome),
            prior=prior,
        )

        payload = computed.to_dict()
        payload["dry_run"] = bool(job.dry_run)
        payload["ledger_entry_id"] = None

        if not job.dry_run:
            data = computed.to_dict()
            data.update({
                "classroom_id": job.classroom_id,
                "scenario_id": scenario.id,
                "user_id": job.user_id,
                "submission_id": submission.id,
                "job_id": job.id,
                "week": scenario.week,
                "created_by": job.created_by,
            })
            entry = await LedgerService.create_ledger_entry(db, data)
            payload["ledger_entry_id"] = entry.id

        now = datetime.utcnow()
        done = await db.execute(
            update(SimulationJob)
            .where(
                SimulationJob.id == job_id,
                SimulationJob.status == JobStatus.PROCESSING.value,
            )
            .values(
                status=JobStatus.DONE.value,
                result=payload,
                error=None,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if (done.rowcount or 0) != 1:
            raise JobProcessingError(job_id, "job left processing before it completed")
        await db.commit()

        logger.info(
            f"Job {job_id} done (scenario {scenario.id}, user {job.user_id}, dry_run={job.dry_run}): "
            f"net_profit={computed.net_profit}"
        )
        return payload

    async def _mark_failed(self, db: AsyncSession, job_id: int, reason: str) -> None:
        now = datetime.utcnow()
        await db.execute(
            update(SimulationJob)
            .where(
                SimulationJob.id == job_id,
                SimulationJob.status == JobStatus.PROCESSING.value,
            )
            .values(
                status=JobStatus.FAILED.value,
                error=reason[:2000],
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
