"""
Scenario lifecycle: state machine, access checks, outcome management,
preview, run and rerun.
"""
import logging

import pytest
from sqlalchemy import update

from conftest import ADMIN_ID, ORG_ID
from classroom_sim.config import Settings
from classroom_sim.errors import (
    ActiveScenarioConflict, AlreadyClosed, AlreadyPublished, EditNotAllowed,
    ErrorCode, Forbidden, FormulaError, JobsInFlight, NotFound, NotPublished,
    OutcomeNotSet, RerunFailed, RerunInProgress, ValidationError
)
from classroom_sim.orm.scenario import Scenario
from classroom_sim.orm.simulation_job import SimulationJob, JobStatus
from classroom_sim.services.job_service import JobService
from classroom_sim.services.ledger_service import LedgerService
from classroom_sim.services.scenario_lifecycle import ScenarioLifecycle

ADMIN = {"actor_id": ADMIN_ID, "organization_id": ORG_ID}


async def _create(lifecycle, db, classroom, title="Week", variables=None):
    return await lifecycle.create(
        db, classroom.id, {"title": title}, variables or {"demand": 100}, **ADMIN
    )


class TestCreateAndUpdate:

    @pytest.mark.asyncio
    async def test_weeks_are_sequential(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        weeks = [(await _create(lifecycle, db, classroom, f"Week {n}")).week for n in range(3)]
        assert weeks == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_created_unpublished_with_defaults(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom, "  Lemonade day  ")

        assert scenario.title == "Lemonade day"
        assert scenario.is_published is False
        assert scenario.is_closed is False
        assert scenario.organization_id == ORG_ID
        assert scenario.variables == {"demand": 100, "price": 5}

    @pytest.mark.asyncio
    async def test_blank_title_rejected(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        with pytest.raises(ValidationError, match="Title is required"):
            await lifecycle.create(db, classroom.id, {"title": "  "}, {"demand": 1}, **ADMIN)

    @pytest.mark.asyncio
    async def test_invalid_variables_rejected(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        with pytest.raises(ValidationError) as exc:
            await lifecycle.create(db, classroom.id, {"title": "Week"}, {"demand": -4}, **ADMIN)
        assert exc.value.code == ErrorCode.INVALID_VARIABLES
        assert await lifecycle.list_scenarios(db, classroom.id) == []

    @pytest.mark.asyncio
    async def test_member_cannot_create(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        with pytest.raises(Forbidden):
            await lifecycle.create(
                db, classroom.id, {"title": "Week"}, {"demand": 1}, actor_id=101, organization_id=ORG_ID
            )

    @pytest.mark.asyncio
    async def test_other_organization_sees_not_found(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)

        with pytest.raises(NotFound):
            await lifecycle.create(
                db, classroom.id, {"title": "Week"}, {"demand": 1}, actor_id=ADMIN_ID, organization_id=999
            )
        with pytest.raises(NotFound):
            await lifecycle.get_scenario_by_id(db, scenario.id, organization_id=999)

    @pytest.mark.asyncio
    async def test_update_fields_and_variables(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)

        updated = await lifecycle.update(
            db, scenario.id, {"title": "Rainy week", "description": "Bring umbrellas"},
            {"demand": 40, "price": 3}, **ADMIN
        )
        assert updated.title == "Rainy week"
        assert updated.description == "Bring umbrellas"
        assert updated.variables == {"demand": 40, "price": 3}
        assert updated.variables_version == 2

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        with pytest.raises(ValidationError, match="week"):
            await lifecycle.update(db, scenario.id, {"week": 9}, **ADMIN)

    @pytest.mark.asyncio
    async def test_published_scenario_still_editable(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        await lifecycle.publish(db, scenario.id, **ADMIN)

        updated = await lifecycle.update(db, scenario.id, {"title": "Edited"}, **ADMIN)
        assert updated.title == "Edited"

    @pytest.mark.asyncio
    async def test_closed_scenario_cannot_be_edited(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        await lifecycle.publish(db, scenario.id, **ADMIN)
        await lifecycle.close(db, scenario.id, **ADMIN)

        with pytest.raises(EditNotAllowed):
            await lifecycle.update(db, scenario.id, {"title": "Too late"}, **ADMIN)
        assert (await lifecycle.get_scenario_by_id(db, scenario.id)).title == "Week"


class TestStateMachine:

    @pytest.mark.asyncio
    async def test_publish_makes_active(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)

        published = await lifecycle.publish(db, scenario.id, **ADMIN)

        assert published.is_published is True
        assert published.published_by == ADMIN_ID
        assert (await lifecycle.get_active_scenario(db, classroom.id)).id == scenario.id

    @pytest.mark.asyncio
    async def test_second_active_scenario_conflicts(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        first = await _create(lifecycle, db, classroom, "First week")
        second = await _create(lifecycle, db, classroom, "Second week")
        await lifecycle.publish(db, first.id, **ADMIN)

        before = [(await lifecycle.get_scenario_by_id(db, s.id)).to_dict() for s in (first, second)]

        with pytest.raises(ActiveScenarioConflict) as exc:
            await lifecycle.publish(db, second.id, **ADMIN)

        assert exc.value.status_code == 409
        assert exc.value.details == {"active_scenario_id": first.id, "active_scenario_title": "First week"}
        after = [(await lifecycle.get_scenario_by_id(db, s.id)).to_dict() for s in (first, second)]
        assert after == before
        assert after[1]["is_published"] is False

    @pytest.mark.asyncio
    async def test_publish_after_close_of_previous(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        first = await _create(lifecycle, db, classroom)
        second = await _create(lifecycle, db, classroom)
        await lifecycle.publish(db, first.id, **ADMIN)
        await lifecycle.close(db, first.id, **ADMIN)

        await lifecycle.publish(db, second.id, **ADMIN)
        assert (await lifecycle.get_active_scenario(db, classroom.id)).id == second.id

    @pytest.mark.asyncio
    async def test_already_published(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        await lifecycle.publish(db, scenario.id, **ADMIN)

        with pytest.raises(AlreadyPublished):
            await lifecycle.publish(db, scenario.id, **ADMIN)

    @pytest.mark.asyncio
    async def test_unpublish_then_republish(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        await lifecycle.publish(db, scenario.id, **ADMIN)

        unpublished = await lifecycle.unpublish(db, scenario.id, **ADMIN)
        assert unpublished.is_published is False
        assert await lifecycle.get_active_scenario(db, classroom.id) is None

        with pytest.raises(NotPublished):
            await lifecycle.unpublish(db, scenario.id, **ADMIN)

        assert (await lifecycle.publish(db, scenario.id, **ADMIN)).is_published is True

    @pytest.mark.asyncio
    async def test_close_requires_publish(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)

        with pytest.raises(NotPublished):
            await lifecycle.close(db, scenario.id, **ADMIN)

    @pytest.mark.asyncio
    async def test_closed_is_terminal(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        await lifecycle.publish(db, scenario.id, **ADMIN)
        closed = await lifecycle.close(db, scenario.id, **ADMIN)

        assert closed.is_closed is True
        assert closed.closed_at is not None
        before = (await lifecycle.get_scenario_by_id(db, scenario.id)).to_dict()

        with pytest.raises(AlreadyClosed):
            await lifecycle.close(db, scenario.id, **ADMIN)
        with pytest.raises(AlreadyClosed):
            await lifecycle.unpublish(db, scenario.id, **ADMIN)
        with pytest.raises(AlreadyPublished):
            await lifecycle.publish(db, scenario.id, **ADMIN)

        assert (await lifecycle.get_scenario_by_id(db, scenario.id)).to_dict() == before

    @pytest.mark.asyncio
    async def test_member_cannot_publish(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        with pytest.raises(Forbidden):
            await lifecycle.publish(db, scenario.id, actor_id=101, organization_id=ORG_ID)
        with pytest.raises(Forbidden):
            await lifecycle.publish(db, scenario.id, actor_id=None, organization_id=ORG_ID)

    @pytest.mark.asyncio
    async def test_list_scenarios(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        first = await _create(lifecycle, db, classroom)
        second = await _create(lifecycle, db, classroom)
        await lifecycle.publish(db, first.id, **ADMIN)
        await lifecycle.close(db, first.id, **ADMIN)

        assert [s.id for s in await lifecycle.list_scenarios(db, classroom.id)] == [first.id, second.id]
        assert [s.id for s in await lifecycle.list_scenarios(db, classroom.id, include_closed=False)] == [second.id]

    @pytest.mark.asyncio
    async def test_current_scenario_for_member(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)

        assert await lifecycle.get_current_scenario_for_member(db, classroom.id, 101) is None
        await lifecycle.publish(db, scenario.id, **ADMIN)
        assert (await lifecycle.get_current_scenario_for_member(db, classroom.id, 101)).id == scenario.id

        with pytest.raises(Forbidden) as exc:
            await lifecycle.get_current_scenario_for_member(db, classroom.id, 999)
        assert exc.value.code == ErrorCode.NOT_ENROLLED


class TestOutcome:

    @pytest.mark.asyncio
    async def test_set_and_merge_outcome(self, db, lifecycle, scenario_with_outcome):
        _, scenario = await scenario_with_outcome(publish=False, submissions=False)

        outcome = await lifecycle.set_outcome(db, scenario.id, {"notes": "Hot day"}, **ADMIN)

        assert outcome.notes == "Hot day"
        assert outcome.parameters == {"unit_cost": 2}
        assert set(outcome.formula) == {"sales", "revenue", "costs", "waste"}

    @pytest.mark.asyncio
    async def test_invalid_formula_rejected(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)

        with pytest.raises(FormulaError):
            await lifecycle.set_outcome(
                db, scenario.id,
                {"formula": {"sales": "__import__('os')", "revenue": "1", "costs": "1"}},
                **ADMIN
            )
        assert await lifecycle.get_outcome(db, scenario.id) is None

    @pytest.mark.asyncio
    async def test_undeclared_formula_names_logged(self, db, seed, lifecycle, caplog):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        formula = {"sales": "min(demand, units_ordered)", "revenue": "sales * price", "costs": "sales * tax_rate"}

        with caplog.at_level(logging.WARNING, logger="classroom_sim.services.scenario_lifecycle"):
            outcome = await lifecycle.set_outcome(db, scenario.id, {"formula": formula}, **ADMIN)

        assert outcome.formula == formula
        warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
        assert warnings == [f"Outcome for scenario {scenario.id} references undeclared names: tax_rate"]

    @pytest.mark.asyncio
    async def test_declared_formula_names_not_logged(self, db, seed, lifecycle, caplog):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        formula = {
            "sales": "min(demand, units_ordered, inventory_before + 50)",
            "revenue": "sales * price",
            "costs": "sales * tax_rate + week",
        }

        with caplog.at_level(logging.WARNING, logger="classroom_sim.services.scenario_lifecycle"):
            await lifecycle.set_outcome(db, scenario.id, {"formula": formula, "parameters": {"tax_rate": 0.1}}, **ADMIN)

        assert not [r for r in caplog.records if r.levelno == logging.WARNING]

    @pytest.mark.asyncio
    async def test_formula_required(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        with pytest.raises(ValidationError, match="formula"):
            await lifecycle.set_outcome(db, scenario.id, {"notes": "no formula"}, **ADMIN)

    @pytest.mark.asyncio
    async def test_delete_outcome_removes_ledger(self, db, lifecycle, worker, scenario_with_outcome):
        _, scenario = await scenario_with_outcome()
        await lifecycle.run(db, scenario.id, **ADMIN)
        await worker.process_pending_jobs()

        result = await lifecycle.delete_outcome(db, scenario.id, **ADMIN)

        assert result == {"scenario_id": scenario.id, "deleted_ledger_entries": 3}
        assert await lifecycle.get_outcome(db, scenario.id) is None
        assert await LedgerService.get_ledger_entries_by_scenario(db, scenario.id) == []

    @pytest.mark.asyncio
    async def test_delete_missing_outcome(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        with pytest.raises(NotFound):
            await lifecycle.delete_outcome(db, scenario.id, **ADMIN)


class TestPreview:

    @pytest.mark.asyncio
    async def test_preview_writes_no_ledger(self, db, lifecycle, scenario_with_outcome):
        _, scenario = await scenario_with_outcome(publish=False)

        preview = await lifecycle.preview(db, scenario.id, **ADMIN)

        assert preview["total_jobs"] == 3
        assert preview["previewed_jobs"] == 3
        assert preview["scenario"]["id"] == scenario.id
        assert preview["outcome"]["parameters"] == {"unit_cost": 2}
        for item in preview["preview_results"]:
            assert item["success"] is True
            assert item["result"]["dry_run"] is True
            assert item["result"]["net_profit"] == 240
        assert await LedgerService.get_ledger_entries_by_scenario(db, scenario.id) == []

    @pytest.mark.asyncio
    async def test_preview_limit(self, db, worker, cache, database_url, scenario_with_outcome):
        _, scenario = await scenario_with_outcome(publish=False)
        limited = ScenarioLifecycle(
            worker=worker, cache=cache, settings=Settings(database_url=database_url, preview_limit=2)
        )

        preview = await limited.preview(db, scenario.id, **ADMIN)

        assert preview["previewed_jobs"] == 2
        counts = await JobService.job_status_counts(db, scenario.id)
        assert counts["done"] == 2
        assert counts["pending"] == 1

    @pytest.mark.asyncio
    async def test_preview_reports_failures(self, db, seed, lifecycle, scenario_with_outcome):
        classroom, scenario = await scenario_with_outcome(submissions=False)
        await seed.submission(classroom.id, scenario.id, 101, variables={"units_ordered": "lots"})

        preview = await lifecycle.preview(db, scenario.id, **ADMIN)

        (item,) = preview["preview_results"]
        assert item["success"] is False
        assert item["user_id"] == 101
        assert "must be a number" in item["error"]

    @pytest.mark.asyncio
    async def test_preview_requires_outcome(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        with pytest.raises(OutcomeNotSet):
            await lifecycle.preview(db, scenario.id, **ADMIN)

    @pytest.mark.asyncio
    async def test_preview_after_run_leaves_real_jobs(self, db, lifecycle, worker, scenario_with_outcome):
        _, scenario = await scenario_with_outcome()
        await lifecycle.run(db, scenario.id, **ADMIN)
        await worker.process_pending_jobs()

        result = await lifecycle.preview(db, scenario.id, **ADMIN)

        assert result["previewed_jobs"] == 0
        counts = await JobService.job_status_counts(db, scenario.id)
        assert counts["done"] == 3
        jobs = await JobService.get_jobs_by_scenario(db, scenario.id)
        assert all(job.dry_run is False for job in jobs)
        assert len(await LedgerService.get_ledger_entries_by_scenario(db, scenario.id)) == 3

    @pytest.mark.asyncio
    async def test_run_after_preview_writes_ledger(self, db, lifecycle, worker, scenario_with_outcome):
        _, scenario = await scenario_with_outcome()
        await lifecycle.preview(db, scenario.id, **ADMIN)

        await lifecycle.run(db, scenario.id, **ADMIN)
        results = await worker.process_pending_jobs()

        assert all(r["success"] for r in results)
        assert len(await LedgerService.get_ledger_entries_by_scenario(db, scenario.id)) == 3


class TestRunAndRerun:

    @pytest.mark.asyncio
    async def test_run_queues_real_jobs(self, db, lifecycle, scenario_with_outcome):
        _, scenario = await scenario_with_outcome()

        result = await lifecycle.run(db, scenario.id, **ADMIN)

        assert result["total_jobs"] == 3
        assert result["job_counts"]["pending"] == 3
        jobs = await JobService.get_jobs_by_scenario(db, scenario.id)
        assert all(job.dry_run is False for job in jobs)

    @pytest.mark.asyncio
    async def test_second_run_leaves_done_jobs_done(self, db, lifecycle, worker, scenario_with_outcome):
        _, scenario = await scenario_with_outcome()
        await lifecycle.run(db, scenario.id, **ADMIN)
        await worker.process_pending_jobs()

        result = await lifecycle.run(db, scenario.id, **ADMIN)

        assert result["job_counts"]["done"] == 3
        assert result["job_counts"]["pending"] == 0
        assert await worker.process_pending_jobs() == []
        counts = await JobService.job_status_counts(db, scenario.id)
        assert counts["done"] == 3
        assert counts["failed"] == 0
        assert len(await LedgerService.get_ledger_entries_by_scenario(db, scenario.id)) == 3

    @pytest.mark.asyncio
    async def test_run_requires_publish(self, db, lifecycle, scenario_with_outcome):
        _, scenario = await scenario_with_outcome(publish=False)
        with pytest.raises(NotPublished):
            await lifecycle.run(db, scenario.id, **ADMIN)

    @pytest.mark.asyncio
    async def test_run_requires_outcome(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        await lifecycle.publish(db, scenario.id, **ADMIN)

        with pytest.raises(OutcomeNotSet) as exc:
            await lifecycle.run(db, scenario.id, **ADMIN)
        assert exc.value.code == ErrorCode.OUTCOME_NOT_SET

    @pytest.mark.asyncio
    async def test_rerun_replaces_results(self, db, lifecycle, worker, scenario_with_outcome):
        _, scenario = await scenario_with_outcome()
        await lifecycle.run(db, scenario.id, **ADMIN)
        await worker.process_pending_jobs()
        await lifecycle.set_outcome(db, scenario.id, {"parameters": {"unit_cost": 3}}, **ADMIN)

        result = await lifecycle.rerun(db, scenario.id, **ADMIN)

        assert result["deleted_ledger_entries"] == 3
        assert result["reset_jobs"] == 3
        assert result["total_jobs"] == 3
        assert result["job_counts"]["pending"] == 3
        assert await LedgerService.get_ledger_entries_by_scenario(db, scenario.id) == []

        await worker.process_pending_jobs()
        entries = await LedgerService.get_ledger_entries_by_scenario(db, scenario.id)
        assert [e.net_profit for e in entries] == [160, 160, 160]
        assert all(e.cash_after == 1160 for e in entries)
        assert (await lifecycle.get_scenario_by_id(db, scenario.id)).rerun_lock is None

    @pytest.mark.asyncio
    async def test_rerun_lock_blocks_run_and_rerun(self, db, lifecycle, scenario_with_outcome):
        _, scenario = await scenario_with_outcome()
        await db.execute(update(Scenario).where(Scenario.id == scenario.id).values(rerun_lock="someone-else"))
        await db.commit()

        with pytest.raises(RerunInProgress):
            await lifecycle.rerun(db, scenario.id, **ADMIN)
        with pytest.raises(RerunInProgress):
            await lifecycle.run(db, scenario.id, **ADMIN)
        assert (await lifecycle.get_scenario_by_id(db, scenario.id)).rerun_lock == "someone-else"

    @pytest.mark.asyncio
    async def test_rerun_refused_while_jobs_processing(self, db, lifecycle, worker, scenario_with_outcome):
        _, scenario = await scenario_with_outcome()
        await lifecycle.run(db, scenario.id, **ADMIN)
        await worker.claim_pending_jobs(1)

        with pytest.raises(JobsInFlight) as exc:
            await lifecycle.rerun(db, scenario.id, **ADMIN)

        assert exc.value.details["processing"] == 1
        assert (await lifecycle.get_scenario_by_id(db, scenario.id)).rerun_lock is None

    @pytest.mark.asyncio
    async def test_failed_rerun_changes_nothing(self, db, lifecycle, worker, scenario_with_outcome, monkeypatch):
        _, scenario = await scenario_with_outcome()
        await lifecycle.run(db, scenario.id, **ADMIN)
        await worker.process_pending_jobs()

        async def broken(*args, **kwargs):
            raise RuntimeError("job table unavailable")

        monkeypatch.setattr(JobService, "create_jobs_for_scenario", staticmethod(broken))

        with pytest.raises(RerunFailed) as exc:
            await lifecycle.rerun(db, scenario.id, **ADMIN)

        assert exc.value.step == "create_jobs"
        assert exc.value.status_code == 500
        assert len(await LedgerService.get_ledger_entries_by_scenario(db, scenario.id)) == 3
        counts = await JobService.job_status_counts(db, scenario.id)
        assert counts["done"] == 3
        assert (await lifecycle.get_scenario_by_id(db, scenario.id)).rerun_lock is None

    @pytest.mark.asyncio
    async def test_delete_outcome_refused_while_processing(self, db, lifecycle, scenario_with_outcome):
        _, scenario = await scenario_with_outcome()
        await lifecycle.run(db, scenario.id, **ADMIN)
        await db.execute(
            update(SimulationJob)
            .where(SimulationJob.scenario_id == scenario.id)
            .values(status=JobStatus.PROCESSING.value)
        )
        await db.commit()

        with pytest.raises(JobsInFlight):
            await lifecycle.delete_outcome(db, scenario.id, **ADMIN)


class TestVariableCache:

    @pytest.mark.asyncio
    async def test_hits_after_first_read(self, db, cache, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)

        first = await lifecycle.get_variables(db, scenario.id)
        second = await lifecycle.get_variables(db, scenario.id)

        assert first == second == {"demand": 100, "price": 5}
        assert cache.misses == 1
        assert cache.hits == 1

    @pytest.mark.asyncio
    async def test_update_invalidates(self, db, cache, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        await lifecycle.get_variables(db, scenario.id)

        await lifecycle.update(db, scenario.id, {}, {"demand": 7}, **ADMIN)

        assert cache.cached_version(scenario.id) is None
        assert await lifecycle.get_variables(db, scenario.id) == {"demand": 7, "price": 5}
        assert cache.cached_version(scenario.id) == 2

    @pytest.mark.asyncio
    async def test_out_of_process_write_detected(self, db, cache, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)
        await lifecycle.get_variables(db, scenario.id)

        await db.execute(
            update(Scenario)
            .where(Scenario.id == scenario.id)
            .values(variables={"demand": 55, "price": 2}, variables_version=Scenario.variables_version + 1)
        )
        await db.commit()

        assert await lifecycle.get_variables(db, scenario.id) == {"demand": 55, "price": 2}
        assert cache.misses == 2

    @pytest.mark.asyncio
    async def test_returned_copy_is_detached(self, db, seed, lifecycle):
        classroom = await seed.classroom()
        scenario = await _create(lifecycle, db, classroom)

        variables = await lifecycle.get_variables(db, scenario.id)
        variables["demand"] = -1

        assert (await lifecycle.get_variables(db, scenario.id))["demand"] == 100

    @pytest.mark.asyncio
    async def test_missing_scenario(self, db, lifecycle):
        with pytest.raises(NotFound):
            await lifecycle.get_variables(db, 4040)
