"""
classroom_sim/orm/simulation_job.py
One unit of simulation work: a member's outcome for a scenario.

Identity is (scenario_id, user_id). Resetting a job rewrites the row back to
pending instead of inserting a new one.

State Flow: pending → processing → done | failed
"""
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, JSON, ForeignKey,
    UniqueConstraint, CheckConstraint, Index
)

from classroom_sim.orm.base import BaseModel, iso


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class SimulationJob(BaseModel):
    __tablename__ = "simulation_jobs"

    classroom_id = Column(Integer, ForeignKey("classrooms.id", ondelete="CASCADE"), nullable=False)
    scenario_id = Column(Integer, ForeignKey("scenarios.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, nullable=False)
    submission_id = Column(Integer, ForeignKey("submissions.id", ondelete="SET NULL"), nullable=True)
    organization_id = Column(Integer, nullable=True)
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)

    dry_run = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("scenario_id", "user_id", name="uq_job_scenario_user"),
        CheckConstraint(
            f"status IN ('{JobStatus.PENDING.value}', '{JobStatus.PROCESSING.value}', "
            f"'{JobStatus.DONE.value}', '{JobStatus.FAILED.value}')",
            name="ck_job_status_valid"
        ),
        Index("idx_job_status", "status", "created_at", "id"),
        Index("idx_job_scenario_status", "scenario_id", "status"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "classroom_id": self.classroom_id,
            "scenario_id": self.scenario_id,
            "user_id": self.user_id,
            "submission_id": self.submission_id,
            "dry_run": self.dry_run,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
            "result": self.result,
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
        }
