"""
Scenario Lifecycle Orchestrator

Create → publish → (unpublish → publish)* → close, plus outcome management,
dry-run preview, full runs and reruns.

Every mutating operation checks admin access first and fails fast: a
precondition failure raises a StateConflict subclass before anything is
written. State transitions are conditional UPDATEs so a concurrent writer
cannot slip a second active scenario past the check; the partial unique
index on scenarios is the final backstop.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any, Mapping

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_sim.config import settings as default_settings, Settings
from classroom_sim.errors import (
    ValidationError, NotFound, StateConflict, AlreadyPublished, AlreadyClosed,
    NotPublished, ActiveScenarioConflict, EditNotAllowed, OutcomeNotSet,
    JobsInFlight, RerunInProgress, RerunFailed, JobProcessingError, JobNotPending,
    describe_exception
)
from classroom_sim.orm.scenario import Scenario, ScenarioOutcome
from classroom_sim.orm.simulation_job import JobStatus
from classroom_sim.orm.variable_definition import VariableScope
from classroom_sim.services.access import ClassroomAccess
from classroom_sim.services.job_service import JobService
from classroom_sim.services.ledger_service import LedgerService
from classroom_sim.services.formula import referenced_names
from classroom_sim.services.outcome_calculator import RESERVED_NAMES, validate_outcome_config
from classroom_sim.services.simulation_worker import SimulationWorker
from classroom_sim.services.variable_cache import ScenarioVariableCache, variable_cache
from classroom_sim.services.variable_schema import VariableSchema
from classroom_sim.tasks.simulation_runner import dispatch_jobs

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description")
OUTCOME_FIELDS = (
    "notes", "hidden_notes", "formula", "parameters",
    "random_event_chance_percent", "random_events", "summary_template",
)
MAX_WEEK_ATTEMPTS = 3


def _clean_title(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Title is required", errors=[{"key": "title", "message": "Title is required"}])
    return value.strip()


class ScenarioLifecycle:
    """
    Scenario state machine and job orchestration.

    Args:
        access: classroom access collaborator
        worker: worker used for synchronous previews and dispatch
        cache: scenario variable cache
        settings: runtime settings (preview limit)
    """

    def __init__(
        self,
        access: Optional[ClassroomAccess] = None,
        worker: Optional[SimulationWorker] = None,
        cache: Optional[ScenarioVariableCache] = None,
        settings: Optional[Settings] = None
    ):
        self.access = access or ClassroomAccess()
        self.cache = cache or variable_cache
        self.settings = settings or default_settings
        self.worker = worker or SimulationWorker(settings=self.settings, cache=self.cache)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_scenario_by_id(
        self,
        db: AsyncSession,
        scenario_id: int,
        organization_id: Optional[int] = None
    ) -> Scenario:
        """Raises NotFound when missing or owned by another organization."""
        result = await db.execute(
            select(Scenario)
            .where(Scenario.id == scenario_id)
            .execution_options(populate_existing=True)
        )
        scenario = result.scalar_one_or_none()
        if scenario is None or (organization_id is not None and scenario.organization_id != organization_id):
            raise NotFound("Scenario", scenario_id)
        return scenario

    async def get_active_scenario(self, db: AsyncSession, classroom_id: int) -> Optional[Scenario]:
        result = await db.execute(
            select(Scenario)
            .where(
                Scenario.classroom_id == classroom_id,
                Scenario.is_published.is_(True),
                Scenario.is_closed.is_(False),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_scenarios(
        self,
        db: AsyncSession,
        classroom_id: int,
        include_closed: bool = True
    ) -> List[Scenario]:
        query = select(Scenario).where(Scenario.classroom_id == classroom_id)
        if not include_closed:
            query = query.where(Scenario.is_closed.is_(False))
        result = await db.execute(query.order_by(Scenario.week))
        return list(result.scalars().all())

    async def get_current_scenario_for_member(
        self,
        db: AsyncSession,
        classroom_id: int,
        member_id: int
    ) -> Optional[Scenario]:
        """Active scenario as seen by an enrolled member. Raises Forbidden otherwise."""
        await self.access.require_enrollment(db, classroom_id, member_id)
        return await self.get_active_scenario(db, classroom_id)

    async def get_outcome(self, db: AsyncSession, scenario_id: int) -> Optional[ScenarioOutcome]:
        result = await db.execute(
            select(ScenarioOutcome)
            .where(ScenarioOutcome.scenario_id == scenario_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_variables(
        self,
        db: AsyncSession,
        scenario_id: int,
        organization_id: Optional[int] = None
    ) -> Dict[str, Any]:
        if organization_id is not None:
            await self.get_scenario_by_id(db, scenario_id, organization_id)
        return await self.cache.get(db, scenario_id)

    async def load_for_admin(
        self,
        db: AsyncSession,
        scenario_id: int,
        actor_id: Optional[int],
        organization_id: Optional[int]
    ) -> Scenario:
        scenario = await self.get_scenario_by_id(db, scenario_id, organization_id)
        await self.access.validate_admin_access(db, scenario.classroom_id, actor_id, organization_id)
        return scenario

    async def _require_outcome(self, db: AsyncSession, scenario_id: int, action: str) -> ScenarioOutcome:
        outcome = await self.get_outcome(db, scenario_id)
        if outcome is None:
            raise OutcomeNotSet(scenario_id, action=action)
        return outcome

    async def _undeclared_names(
        self,
        db: AsyncSession,
        scenario: Scenario,
        formula: Mapping[str, Any],
        parameters: Mapping[str, Any]
    ) -> List[str]:
        """Formula names that no parameter, variable definition or scenario variable provides."""
        known = set(parameters) | set(RESERVED_NAMES) | set(scenario.variables or {})
        for scope in (VariableScope.SCENARIO, VariableScope.SUBMISSION):
            known.update(d.key for d in await VariableSchema.get_definitions(db, scenario.classroom_id, scope))
        return [name for name in referenced_names(formula) if name not in known]

    async def _raise_active_conflict(self, db: AsyncSession, classroom_id: int, scenario_id: int) -> None:
        active = await self.get_active_scenario(db, classroom_id)
        if active is not None and active.id != scenario_id:
            raise ActiveScenarioConflict(active.id, active.title)

    # =========================================================================
    # Create / update
    # =========================================================================

    async def create(
        self,
        db: AsyncSession,
        classroom_id: int,
        fields: Mapping[str, Any],
        variables: Optional[Mapping[str, Any]] = None,
        actor_id: Optional[int] = None,
        organization_id: Optional[int] = None
    ) -> Scenario:
        """
        Create an unpublished scenario in the next free week.

        Raises:
            NotFound / Forbidden: access check failed
            ValidationError: bad title or variables
        """
        classroom = await self.access.validate_admin_access(db, classroom_id, actor_id, organization_id)
        title = _clean_title(fields.get("title"))
        description = fields.get("description") or ""
        normalized = await VariableSchema.validate_and_normalize(
            db, classroom_id, VariableScope.SCENARIO, variables or {}
        )

        for attempt in range(MAX_WEEK_ATTEMPTS):
            result = await db.execute(
                select(func.max(Scenario.week)).where(Scenario.classroom_id == classroom_id)
            )
            week = (result.scalar() or 0) + 1
            scenario = Scenario(
                classroom_id=classroom_id,
                organization_id=classroom.organization_id,
                week=week,
                title=title,
                description=description,
                variables=normalized,
                variables_version=1,
                is_published=False,
                is_closed=False,
                created_by=actor_id,
                updated_by=actor_id,
            )
            db.add(scenario)
            try:
                await db.commit()
            except IntegrityError:
                # Another admin took the same week number
                await db.rollback()
                logger.warning(f"Week {week} taken in classroom {classroom_id}, retrying")
                continue
            await db.refresh(scenario)
            logger.info(f"Scenario {scenario.id} created in classroom {classroom_id} (week {week})")
            return scenario

        raise StateConflict("Could not assign a week number; try again")

    async def update(
        self,
        db: AsyncSession,
        scenario_id: int,
        fields: Mapping[str, Any],
        variables: Optional[Mapping[str, Any]] = None,
        actor_id: Optional[int] = None,
        organization_id: Optional[int] = None
    ) -> Scenario:
        """
        Edit title, description and variables.

        Raises:
            EditNotAllowed: scenario is published and closed
            ValidationError: bad title or variables
        """
        scenario = await self.load_for_admin(db, scenario_id, actor_id, organization_id)
        if not scenario.can_edit():
            raise EditNotAllowed(scenario_id)

        values: Dict[str, Any] = {}
        unknown = [key for key in fields if key not in EDITABLE_FIELDS]
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        if "title" in fields:
            values["title"] = _clean_title(fields["title"])
        if "description" in fields:
            values["description"] = fields["description"] or ""
        if variables is not None:
            values["variables"] = await VariableSchema.validate_and_normalize(
                db, scenario.classroom_id, VariableScope.SCENARIO, variables
            )
            values["variables_version"] = Scenario.variables_version + 1

        if not values:
            return scenario

        values["updated_by"] = actor_id
        values["updated_at"] = datetime.utcnow()
        result = await db.execute(
            update(Scenario)
            .where(
                Scenario.id == scenario_id,
                or_(Scenario.is_published.is_(False), Scenario.is_closed.is_(False)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) != 1:
            await db.rollback()
            raise EditNotAllowed(scenario_id)
        await db.commit()

        if variables is not None:
            self.cache.invalidate(scenario_id)
        logger.info(f"Scenario {scenario_id} updated by {actor_id}: {sorted(values)}")
        return await self.get_scenario_by_id(db, scenario_id)

    # =========================================================================
    # Publish / unpublish / close
    # =========================================================================

    async def publish(
        self,
        db: AsyncSession,
        scenario_id: int,
        actor_id: Optional[int] = None,
        organization_id: Optional[int] = None
    ) -> Scenario:
        """
        Make the scenario the classroom's active one.

        Raises:
            AlreadyPublished, AlreadyClosed
            ActiveScenarioConflict: another scenario is active (carries its id and title)
        """
        scenario = await self.load_for_admin(db, scenario_id, actor_id, organization_id)
        if scenario.is_published:
            raise AlreadyPublished(scenario_id)
        if scenario.is_closed:
            raise AlreadyClosed(scenario_id, action="publish")
        await self._raise_active_conflict(db, scenario.classroom_id, scenario_id)

        now = datetime.utcnow()
        try:
            result = await db.execute(
                update(Scenario)
                .where(
                    Scenario.id == scenario_id,
                    Scenario.is_published.is_(False),
                    Scenario.is_closed.is_(False),
                )
                .values(is_published=True, published_at=now, published_by=actor_id, updated_by=actor_id, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if (result.rowcount or 0) != 1:
                await db.rollback()
                raise AlreadyPublished(scenario_id)
            await db.commit()
        except IntegrityError:
            # Partial unique index: someone published another scenario first
            await db.rollback()
            await self._raise_active_conflict(db, scenario.classroom_id, scenario_id)
            raise StateConflict("Another scenario became active while publishing") from None

        logger.info(f"Scenario {scenario_id} published by {actor_id}")
        return await self.get_scenario_by_id(db, scenario_id)

    async def unpublish(
        self,
        db: AsyncSession,
        scenario_id: int,
        actor_id: Optional[int] = None,
        organization_id: Optional[int] = None
    ) -> Scenario:
        """Raises NotPublished or AlreadyClosed."""
        scenario = await self.load_for_admin(db, scenario_id, actor_id, organization_id)
        if not scenario.is_published:
            raise NotPublished(scenario_id)
        if scenario.is_closed:
            raise AlreadyClosed(scenario_id, action="unpublish")

        now = datetime.utcnow()
        result = await db.execute(
            update(Scenario)
            .where(
                Scenario.id == scenario_id,
                Scenario.is_published.is_(True),
                Scenario.is_closed.is_(False),
            )
            .values(is_published=False, updated_by=actor_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) != 1:
            await db.rollback()
            raise StateConflict("Scenario changed state while unpublishing", details={"scenario_id": scenario_id})
        await db.commit()

        logger.info(f"Scenario {scenario_id} unpublished by {actor_id}")
        return await self.get_scenario_by_id(db, scenario_id)

    async def close(
        self,
        db: AsyncSession,
        scenario_id: int,
        actor_id: Optional[int] = None,
        organization_id: Optional[int] = None
    ) -> Scenario:
        """Terminal transition. Raises NotPublished or AlreadyClosed."""
        scenario = await self.load_for_admin(db, scenario_id, actor_id, organization_id)
        if scenario.is_closed:
            raise AlreadyClosed(scenario_id, action="close")
        if not scenario.is_published:
            raise NotPublished(scenario_id)

        now = datetime.utcnow()
        result = await db.execute(
            update(Scenario)
            .where(
                Scenario.id == scenario_id,
                Scenario.is_published.is_(True),
                Scenario.is_closed.is_(False),
            )
            .values(is_closed=True, closed_at=now, closed_by=actor_id, updated_by=actor_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) != 1:
            await db.rollback()
            raise StateConflict("Scenario changed state while closing", details={"scenario_id": scenario_id})
        await db.commit()

        logger.info(f"Scenario {scenario_id} closed by {actor_id}")
        return await self.get_scenario_by_id(db, scenario_id)

    # =========================================================================
    # Outcome
    # =========================================================================

    async def set_outcome(
        self,
        db: AsyncSession,
        scenario_id: int,
        data: Mapping[str, Any],
        actor_id: Optional[int] = None,
        organization_id: Optional[int] = None
    ) -> ScenarioOutcome:
        """
        Create or replace the scenario's outcome.

        Raises:
            FormulaError: formula, parameters or random events are invalid
        """
        scenario = await self.load_for_admin(db, scenario_id, actor_id, organization_id)

        unknown = [key for key in data if key not in OUTCOME_FIELDS]
        if unknown:
            raise ValidationError(f"Unknown outcome fields: {', '.join(sorted(unknown))}")

        outcome = await self.get_outcome(db, scenario_id)
        merged = outcome.to_dict() if outcome is not None else {}
        merged.update(data)
        if "formula" not in merged:
            raise ValidationError("Outcome formula is required", errors=[{"key": "formula", "message": "required"}])

        validate_outcome_config(
            merged.get("formula"),
            merged.get("parameters") or {},
            merged.get("random_event_chance_percent") or 0,
            merged.get("random_events") or [],
        )
        undeclared = await self._undeclared_names(db, scenario, merged["formula"], merged.get("parameters") or {})
        if undeclared:
            logger.warning(
                f"Outcome for scenario {scenario_id} references undeclared names: {', '.join(undeclared)}"
            )

        if outcome is None:
            outcome = ScenarioOutcome(scenario_id=scenario_id, created_by=actor_id)
            db.add(outcome)
        outcome.notes = merged.get("notes") or ""
        outcome.hidden_notes = merged.get("hidden_notes") or ""
        outcome.formula = dict(merged["formula"])
        outcome.parameters = dict(merged.get("parameters") or {})
        outcome.random_event_chance_percent = float(merged.get("random_event_chance_percent") or 0)
        outcome.random_events = list(merged.get("random_events") or [])
        outcome.summary_template = merged.get("summary_template")
        outcome.updated_by = actor_id
        outcome.updated_at = datetime.utcnow()

        await db.commit()
        await db.refresh(outcome)
        logger.info(f"Outcome for scenario {scenario_id} saved by {actor_id}")
        return outcome

    async def delete_outcome(
        self,
        db: AsyncSession,
        scenario_id: int,
        actor_id: Optional[int] = None,
        organization_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Delete the outcome and every ledger entry computed from it."""
        await self.load_for_admin(db, scenario_id, actor_id, organization_id)
        outcome = await self.get_outcome(db, scenario_id)
        if outcome is None:
            raise NotFound("ScenarioOutcome", scenario_id)

        processing = await JobService.count_processing_jobs(db, scenario_id)
        if processing:
            raise JobsInFlight(scenario_id, processing)

        deleted = await LedgerService.delete_ledger_entries_for_scenario(db, scenario_id)
        await db.execute(delete(ScenarioOutcome).where(ScenarioOutcome.scenario_id == scenario_id))
        await db.commit()

        logger.info(f"Outcome for scenario {scenario_id} deleted by {actor_id} ({deleted} ledger entries removed)")
        return {"scenario_id": scenario_id, "deleted_ledger_entries": deleted}

    # =========================================================================
    # Preview / run / rerun
    # =========================================================================

    async def preview(
        self,
        db: AsyncSession,
        scenario_id: int,
        actor_id: Optional[int] = None,
        organization_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Create dry-run jobs and compute the first few synchronously.

        Nothing is written to the ledger. Remaining dry-run jobs stay pending
        for the worker. Members whose real job already exists keep it and
        are not previewed.
        """
        scenario = await self.load_for_admin(db, scenario_id, actor_id, organization_id)
        outcome = await self._require_outcome(db, scenario_id, action="preview")

        processing = await JobService.count_processing_jobs(db, scenario_id)
        if processing:
            raise JobsInFlight(scenario_id, processing)

        jobs = await JobService.create_jobs_for_scenario(
            db,
            scenario_id=scenario_id,
            classroom_id=scenario.classroom_id,
            dry_run=True,
            organization_id=scenario.organization_id,
            actor_id=actor_id,
        )
        # Real jobs queued by a run are never computed here
        pending = [job for job in jobs if job.dry_run and job.status == JobStatus.PENDING.value]

        preview_results = []
        for job in pending[:self.settings.preview_limit]:
            try:
                result = await self.worker.process_job(job.id)
                preview_results.append({"success": True, "job_id": job.id, "user_id": job.user_id, "result": result})
            except (JobProcessingError, JobNotPending) as e:
                preview_results.append({"success": False, "job_id": job.id, "user_id": job.user_id, "error": e.message})

        logger.info(f"Preview of scenario {scenario_id}: {len(preview_results)}/{len(jobs)} jobs computed")
        return {
            "scenario": scenario.to_dict(),
            "outcome": outcome.to_dict(),
            "preview_results": preview_results,
            "total_jobs": len(jobs),
            "previewed_jobs": len(preview_results),
        }

    async def run(
        self,
        db: AsyncSession,
        scenario_id: int,
        actor_id: Optional[int] = None,
        organization_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Queue real (ledger-writing) jobs for a published scenario and dispatch them."""
        scenario = await self.load_for_admin(db, scenario_id, actor_id, organization_id)
        if not scenario.is_published:
            raise NotPublished(scenario_id)
        await self._require_outcome(db, scenario_id, action="running")
        if scenario.rerun_lock is not None:
            raise RerunInProgress(scenario_id)

        jobs = await JobService.create_jobs_for_scenario(
            db,
            scenario_id=scenario_id,
            classroom_id=scenario.classroom_id,
            dry_run=False,
            organization_id=scenario.organization_id,
            actor_id=actor_id,
        )
        dispatch_jobs(worker=self.worker)
        return {
            "scenario_id": scenario_id,
            "total_jobs": len(jobs),
            "job_counts": await JobService.job_status_counts(db, scenario_id),
        }

    async def rerun(
        self,
        db: AsyncSession,
        scenario_id: int,
        actor_id: Optional[int] = None,
        organization_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Undo and redo every result for the scenario.

        Holding the scenario's rerun lock, and only while no job is
        processing, one transaction deletes the ledger entries, resets the
        jobs and recreates them. Any failure rolls all three back.

        Raises:
            OutcomeNotSet, RerunInProgress, JobsInFlight
            RerunFailed: a step failed; nothing was changed
        """
        scenario = await self.load_for_admin(db, scenario_id, actor_id, organization_id)
        await self._require_outcome(db, scenario_id, action="rerunning")

        token = uuid.uuid4().hex
        acquired = await db.execute(
            update(Scenario)
            .where(Scenario.id == scenario_id, Scenario.rerun_lock.is_(None))
            .values(rerun_lock=token, rerun_locked_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if (acquired.rowcount or 0) != 1:
            raise RerunInProgress(scenario_id)

        step = "check_jobs"
        try:
            processing = await JobService.count_processing_jobs(db, scenario_id)
            if processing:
                raise JobsInFlight(scenario_id, processing)

            step = "delete_ledger"
            deleted = await LedgerService.delete_ledger_entries_for_scenario(db, scenario_id)

            step = "reset_jobs"
            reset = await JobService.reset_jobs_for_scenario(db, scenario_id, commit=False)

            step = "create_jobs"
            jobs = await JobService.create_jobs_for_scenario(
                db,
                scenario_id=scenario_id,
                classroom_id=scenario.classroom_id,
                dry_run=False,
                organization_id=scenario.organization_id,
                actor_id=actor_id,
                commit=False,
            )
            await db.commit()
        except StateConflict:
            await db.rollback()
            raise
        except Exception as e:
            await db.rollback()
            logger.error(f"Rerun of scenario {scenario_id} failed during {step}: {describe_exception(e)}")
            raise RerunFailed(scenario_id, step, describe_exception(e)) from e
        finally:
            await db.execute(
                update(Scenario)
                .where(Scenario.id == scenario_id, Scenario.rerun_lock == token)
                .values(rerun_lock=None, rerun_locked_at=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        logger.info(
            f"Scenario {scenario_id} rerun by {actor_id}: {deleted} ledger entries deleted, "
            f"{reset} jobs reset, {len(jobs)} jobs queued"
        )
        dispatch_jobs(worker=self.worker)
        return {
            "scenario_id": scenario_id,
            "deleted_ledger_entries": deleted,
            "reset_jobs": reset,
            "total_jobs": len(jobs),
            "job_counts": await JobService.job_status_counts(db, scenario_id),
        }
