"""
Scenario Variable Cache

Read-through cache of validated scenario variables, keyed by scenario id.

Each entry remembers the scenario's variables_version. A read compares it
with the stored version (one narrow query) and reloads on mismatch, so a
write made by another process is never served stale. Writers in this
process also call invalidate() directly.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_sim.errors import NotFound
from classroom_sim.orm.scenario import Scenario
from classroom_sim.orm.variable_definition import VariableScope
from classroom_sim.services.variable_schema import VariableSchema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _CachedVariables:
    version: int
    variables: Dict[str, Any]


class ScenarioVariableCache:
    def __init__(self):
        self._entries: Dict[int, _CachedVariables] = {}
        self.hits = 0
        self.misses = 0

    async def get(self, db: AsyncSession, scenario_id: int) -> Dict[str, Any]:
        """
        Return the scenario's variables, reloading and revalidating when the
        stored version differs from the cached one.

        Raises:
            NotFound: scenario does not exist
            ValidationError: stored variables no longer satisfy the schema
        """
        result = await db.execute(
            select(Scenario.classroom_id, Scenario.variables_version).where(Scenario.id == scenario_id)
        )
        row = result.first()
        if row is None:
            self._entries.pop(scenario_id, None)
            raise NotFound("Scenario", scenario_id)
        classroom_id, version = row

        cached = self._entries.get(scenario_id)
        if cached is not None and cached.version == version:
            self.hits += 1
            return dict(cached.variables)

        self.misses += 1
        variables = await self._load(db, scenario_id, classroom_id)
        self._entries[scenario_id] = _CachedVariables(version=version, variables=variables)
        return dict(variables)

    async def _load(self, db: AsyncSession, scenario_id: int, classroom_id: int) -> Dict[str, Any]:
        result = await db.execute(select(Scenario.variables).where(Scenario.id == scenario_id))
        raw = result.scalar_one_or_none() or {}
        variables = await VariableSchema.validate_and_normalize(
            db, classroom_id, VariableScope.SCENARIO, raw
        )
        logger.debug(f"Loaded {len(variables)} variables for scenario {scenario_id}")
        return variables

    def invalidate(self, scenario_id: Optional[int] = None) -> None:
        """Drop one scenario's entry, or everything when no id is given."""
        if scenario_id is None:
            self._entries.clear()
        else:
            self._entries.pop(scenario_id, None)

    def cached_version(self, scenario_id: int) -> Optional[int]:
        entry = self._entries.get(scenario_id)
        return entry.version if entry else None


# Process-wide cache shared by the lifecycle and the worker
variable_cache = ScenarioVariableCache()
