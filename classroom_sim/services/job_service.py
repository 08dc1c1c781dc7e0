"""
Job Service

Creates, resets and queries SimulationJobs.

A job is keyed by (scenario_id, user_id). Creating jobs for a scenario is an
upsert by that key: absent jobs are inserted and real (ledger-writing) jobs
that already exist are left as they are. Only preview jobs, which never
touch the ledger, are re-armed: a new preview recomputes them and a run
promotes them to real jobs. Calling it twice never duplicates work, and a
finished real job goes back to pending only through reset_jobs_for_scenario.

Callers must ensure the scenario has an outcome configured before creating
jobs (OutcomeNotSet is raised by the lifecycle, not here).
"""
import logging
from datetime import datetime
from typing import Optional, List, Dict

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_sim.orm.simulation_job import SimulationJob, JobStatus
from classroom_sim.services.access import SubmissionStore

logger = logging.getLogger(__name__)


class JobService:

    @staticmethod
    async def create_jobs_for_scenario(
        db: AsyncSession,
        scenario_id: int,
        classroom_id: int,
        dry_run: bool = False,
        organization_id: Optional[int] = None,
        actor_id: Optional[int] = None,
        commit: bool = True
    ) -> List[SimulationJob]:
        """
        Ensure one pending job per submission of the scenario.

        Args:
            db: Database session
            scenario_id: Scenario the jobs compute
            classroom_id: Classroom owning the submissions
            dry_run: Jobs compute results without writing the ledger
            organization_id: Stored on the job for auditing
            actor_id: Admin who requested the run
            commit: False when the caller owns the transaction (rerun)

        Returns:
            All jobs for the scenario, ordered by id
        """
        submissions = await SubmissionStore.get_submissions_by_scenario(db, classroom_id, scenario_id)

        result = await db.execute(
            select(SimulationJob)
            .where(SimulationJob.scenario_id == scenario_id)
            .execution_options(populate_existing=True)
        )
        existing: Dict[int, SimulationJob] = {job.user_id: job for job in result.scalars().all()}

        created = 0
        rearmed = 0
        now = datetime.utcnow()
        for submission in submissions:
            job = existing.get(submission.user_id)
            if job is None:
                job = SimulationJob(
                    classroom_id=classroom_id,
                    scenario_id=scenario_id,
                    user_id=submission.user_id,
                    submission_id=submission.id,
                    organization_id=organization_id,
                    created_by=actor_id,
                    updated_by=actor_id,
                    dry_run=dry_run,
                    status=JobStatus.PENDING.value,
                    attempts=0,
                )
                db.add(job)
                existing[submission.user_id] = job
                created += 1
                continue

            # A processing job is left alone; the worker owns it
            if job.status == JobStatus.PROCESSING.value:
                continue
            # Real jobs only move forward; reset_jobs_for_scenario is the way back
            if not job.dry_run:
                continue

            job.submission_id = submission.id
            job.dry_run = dry_run
            job.status = JobStatus.PENDING.value
            job.result = None
            job.error = None
            job.started_at = None
            job.completed_at = None
            job.updated_by = actor_id
            job.updated_at = now
            rearmed += 1

        await db.flush()
        if commit:
            await db.commit()

        logger.info(
            f"Jobs for scenario {scenario_id} (dry_run={dry_run}): "
            f"{created} created, {rearmed} re-armed, {len(submissions)} submissions"
        )
        return await JobService.get_jobs_by_scenario(db, scenario_id)

    @staticmethod
    async def reset_jobs_for_scenario(
        db: AsyncSession,
        scenario_id: int,
        commit: bool = True
    ) -> int:
        """Force every job of the scenario back to pending without deleting rows."""
        result = await db.execute(
            update(SimulationJob)
            .where(SimulationJob.scenario_id == scenario_id)
            .values(
                status=JobStatus.PENDING.value,
                result=None,
                error=None,
                attempts=0,
                started_at=None,
                completed_at=None,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if commit:
            await db.commit()
        count = result.rowcount or 0
        logger.info(f"Reset {count} jobs for scenario {scenario_id}")
        return count

    @staticmethod
    async def requeue_failed_jobs(db: AsyncSession, scenario_id: int) -> int:
        """Move a scenario's failed jobs back to pending. There is no automatic retry."""
        result = await db.execute(
            update(SimulationJob)
            .where(
                SimulationJob.scenario_id == scenario_id,
                SimulationJob.status == JobStatus.FAILED.value,
            )
            .values(
                status=JobStatus.PENDING.value,
                error=None,
                started_at=None,
                completed_at=None,
                updated_at=datetime.utcnow(),
            ).execution_options(synchronize_session=False)
        )
        await db.commit()
        count = result.rowcount or 0
        logger.info(f"Requeued {count} failed jobs for scenario {scenario_id}")
        return count

    @staticmethod
    async def get_jobs_by_scenario(db: AsyncSession, scenario_id: int) -> List[SimulationJob]:
        result = await db.execute(
            select(SimulationJob)
            .where(SimulationJob.scenario_id == scenario_id)
            .order_by(SimulationJob.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_job_by_id(db: AsyncSession, job_id: int) -> Optional[SimulationJob]:
        result = await db.execute(
            select(SimulationJob)
            .where(SimulationJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_pending_jobs(db: AsyncSession, limit: int = 10) -> List[SimulationJob]:
        """Oldest pending jobs first, ties broken by id."""
        result = await db.execute(
            select(SimulationJob)
            .where(SimulationJob.status == JobStatus.PENDING.value)
            .order_by(SimulationJob.created_at, SimulationJob.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def count_processing_jobs(db: AsyncSession, scenario_id: int) -> int:
        result = await db.execute(
            select(func.count(SimulationJob.id)).where(
                SimulationJob.scenario_id == scenario_id,
                SimulationJob.status == JobStatus.PROCESSING.value,
            )
        )
        return result.scalar_one()

    @staticmethod
    async def job_status_counts(db: AsyncSession, scenario_id: int) -> Dict[str, int]:
        result = await db.execute(
            select(SimulationJob.status, func.count(SimulationJob.id))
            .where(SimulationJob.scenario_id == scenario_id)
            .group_by(SimulationJob.status)
        )
        counts = {status.value: 0 for status in JobStatus}
        for status, count in result.all():
            counts[status] = count
        counts["total"] = sum(counts[s.value] for s in JobStatus)
        return counts
