"""
Shared fixtures: a fresh file-backed SQLite database per test, the worker and
lifecycle wired to it, and a seeder for classrooms, variables, submissions and
outcomes.
"""
from typing import Any, Dict, Iterable, Optional

import pytest
import pytest_asyncio

from classroom_sim.config import Settings
from classroom_sim.database import build_engine, build_session_factory, init_db
from classroom_sim.orm import (
    Classroom, Enrollment, EnrollmentRole, VariableDefinition, Submission
)
from classroom_sim.services.scenario_lifecycle import ScenarioLifecycle
from classroom_sim.services.simulation_worker import SimulationWorker
from classroom_sim.services.variable_cache import ScenarioVariableCache

ADMIN_ID = 1
MEMBER_IDS = (101, 102, 103)
ORG_ID = 10

DEFAULT_FORMULA = {
    "sales": "min(demand, units_ordered)",
    "revenue": "sales * price",
    "costs": "units_ordered * unit_cost",
    "waste": "units_ordered - sales",
}


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'classroom_sim_test.db'}"


@pytest.fixture
def test_settings(database_url):
    return Settings(
        database_url=database_url,
        dispatch_mode="poll",
        worker_concurrency=4,
        batch_limit=10,
        preview_limit=5,
        job_stale_after_seconds=600,
        default_starting_balance=1000.0,
    )


@pytest_asyncio.fixture
async def engine(database_url):
    engine = build_engine(database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache():
    return ScenarioVariableCache()


@pytest.fixture
def worker(session_factory, test_settings, cache):
    return SimulationWorker(session_factory=session_factory, settings=test_settings, cache=cache)


@pytest.fixture
def lifecycle(worker, cache, test_settings):
    return ScenarioLifecycle(worker=worker, cache=cache, settings=test_settings)


class Seeder:
    """Writes directory records and submissions straight to the database."""

    def __init__(self, db):
        self.db = db

    async def classroom(
        self,
        organization_id: int = ORG_ID,
        admin_id: int = ADMIN_ID,
        members: Iterable[int] = MEMBER_IDS,
        starting_balance: Optional[float] = 1000.0,
        starting_inventory: float = 0.0,
        with_variables: bool = True
    ) -> Classroom:
        classroom = Classroom(
            organization_id=organization_id,
            name="Lemonade Stand 101",
            starting_balance=starting_balance,
            starting_inventory=starting_inventory,
        )
        self.db.add(classroom)
        await self.db.flush()

        self.db.add(Enrollment(classroom_id=classroom.id, user_id=admin_id, role=EnrollmentRole.ADMIN.value))
        for member_id in members:
            self.db.add(Enrollment(classroom_id=classroom.id, user_id=member_id, role=EnrollmentRole.MEMBER.value))

        if with_variables:
            self.db.add_all([
                VariableDefinition(
                    classroom_id=classroom.id, key="demand", label="Demand",
                    applies_to="scenario", data_type="number", required=True, min_value=0,
                ),
                VariableDefinition(
                    classroom_id=classroom.id, key="price", label="Price",
                    applies_to="scenario", data_type="number", required=True, default_value=5,
                ),
                VariableDefinition(
                    classroom_id=classroom.id, key="units_ordered", label="Units ordered",
                    applies_to="submission", data_type="number", required=True, min_value=0,
                ),
            ])
        await self.db.commit()
        return classroom

    async def variable(self, classroom_id: int, key: str, applies_to: str = "scenario", **fields) -> VariableDefinition:
        definition = VariableDefinition(
            classroom_id=classroom_id,
            key=key,
            label=fields.pop("label", key),
            applies_to=applies_to,
            data_type=fields.pop("data_type", "number"),
            **fields
        )
        self.db.add(definition)
        await self.db.commit()
        return definition

    async def submission(
        self,
        classroom_id: int,
        scenario_id: int,
        user_id: int,
        variables: Optional[Dict[str, Any]] = None
    ) -> Submission:
        submission = Submission(
            classroom_id=classroom_id,
            scenario_id=scenario_id,
            user_id=user_id,
            variables=variables if variables is not None else {"units_ordered": 80},
        )
        self.db.add(submission)
        await self.db.commit()
        return submission

    async def submissions(self, classroom_id: int, scenario_id: int, users: Iterable[int] = MEMBER_IDS, **kw):
        return [await self.submission(classroom_id, scenario_id, user_id, **kw) for user_id in users]


@pytest.fixture
def seed(db):
    return Seeder(db)


async def _scenario_with_outcome(lifecycle, db, seed, publish=True, submissions=True, formula=None, **outcome):
    classroom = await seed.classroom()
    scenario = await lifecycle.create(
        db, classroom.id, {"title": "Week one"}, {"demand": 100, "price": 5},
        actor_id=ADMIN_ID, organization_id=ORG_ID,
    )
    await lifecycle.set_outcome(
        db, scenario.id,
        {"formula": formula or DEFAULT_FORMULA, "parameters": {"unit_cost": 2}, **outcome},
        actor_id=ADMIN_ID, organization_id=ORG_ID,
    )
    if publish:
        await lifecycle.publish(db, scenario.id, actor_id=ADMIN_ID, organization_id=ORG_ID)
    if submissions:
        await seed.submissions(classroom.id, scenario.id)
    return classroom, scenario


@pytest.fixture
def scenario_with_outcome(lifecycle, db, seed):
    """Factory: classroom + published scenario with outcome and three submissions."""
    async def factory(**kwargs):
        return await _scenario_with_outcome(lifecycle, db, seed, **kwargs)
    return factory
