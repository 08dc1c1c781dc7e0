"""
classroom_sim/orm/__init__.py
Importing this package registers every model with Base.metadata.
"""
from classroom_sim.orm.base import Base, BaseModel
from classroom_sim.orm.classroom import Classroom, Enrollment, EnrollmentRole
from classroom_sim.orm.variable_definition import VariableDefinition, VariableScope, VariableDataType
from classroom_sim.orm.scenario import Scenario, ScenarioOutcome
from classroom_sim.orm.submission import Submission
from classroom_sim.orm.simulation_job import SimulationJob, JobStatus
from classroom_sim.orm.ledger import LedgerEntry

__all__ = [
    "Base",
    "BaseModel",
    "Classroom",
    "Enrollment",
    "EnrollmentRole",
    "VariableDefinition",
    "VariableScope",
    "VariableDataType",
    "Scenario",
    "ScenarioOutcome",
    "Submission",
    "SimulationJob",
    "JobStatus",
    "LedgerEntry",
]
