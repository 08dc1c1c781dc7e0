"""
classroom_sim/orm/submission.py
A member's inputs for one scenario. Read-only to the job pipeline.
"""
from datetime import datetime

from sqlalchemy import Column, Integer, DateTime, JSON, ForeignKey, UniqueConstraint, Index

from classroom_sim.orm.base import BaseModel, iso


class Submission(BaseModel):
    __tablename__ = "submissions"

    classroom_id = Column(Integer, ForeignKey("classrooms.id", ondelete="CASCADE"), nullable=False)
    scenario_id = Column(Integer, ForeignKey("scenarios.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, nullable=False)
    variables = Column(JSON, nullable=False, default=dict)
    submitted_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("classroom_id", "scenario_id", "user_id", name="uq_submission_member"),
        Index("idx_submission_scenario", "scenario_id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "classroom_id": self.classroom_id,
            "scenario_id": self.scenario_id,
            "user_id": self.user_id,
            "variables": dict(self.variables or {}),
            "submitted_at": iso(self.submitted_at),
        }
