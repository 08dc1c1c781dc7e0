"""
classroom_sim/orm/scenario.py
Scenario and its grading/payout configuration.

A classroom has at most one active scenario (published and not closed).
The partial unique index below enforces that at write time on both SQLite
and PostgreSQL, so the constraint survives restarts and concurrent writers.
"""
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, DateTime, JSON, ForeignKey,
    UniqueConstraint, CheckConstraint, Index, text
)

from classroom_sim.orm.base import BaseModel, iso


class Scenario(BaseModel):
    __tablename__ = "scenarios"

    classroom_id = Column(Integer, ForeignKey("classrooms.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(Integer, nullable=False, index=True)
    week = Column(Integer, nullable=False)
    title = Column(String(300), nullable=False)
    description = Column(Text, nullable=False, default="")

    # Ordered name -> scalar mapping, validated against the classroom schema
    variables = Column(JSON, nullable=False, default=dict)
    variables_version = Column(Integer, nullable=False, default=1)

    is_published = Column(Boolean, nullable=False, default=False)
    is_closed = Column(Boolean, nullable=False, default=False)
    published_at = Column(DateTime, nullable=True)
    published_by = Column(Integer, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    closed_by = Column(Integer, nullable=True)

    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)

    # Held while a rerun rewrites this scenario's ledger and jobs
    rerun_lock = Column(String(64), nullable=True)
    rerun_locked_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("classroom_id", "week", name="uq_scenario_classroom_week"),
        CheckConstraint("week >= 1", name="ck_scenario_week_positive"),
        Index(
            "uq_scenario_active_per_classroom",
            "classroom_id",
            unique=True,
            sqlite_where=text("is_published = 1 AND is_closed = 0"),
            postgresql_where=text("is_published AND NOT is_closed"),
        ),
        Index("idx_scenario_state", "classroom_id", "is_published", "is_closed"),
    )

    @property
    def is_active(self) -> bool:
        return bool(self.is_published) and not self.is_closed

    def can_edit(self) -> bool:
        # Editable unless both published and closed
        return not self.is_published or not self.is_closed

    def to_dict(self, variables=None):
        return {
            "id": self.id,
            "classroom_id": self.classroom_id,
            "organization_id": self.organization_id,
            "week": self.week,
            "title": self.title,
            "description": self.description,
            "variables": dict(variables if variables is not None else (self.variables or {})),
            "is_published": self.is_published,
            "is_closed": self.is_closed,
            "published_at": iso(self.published_at),
            "published_by": self.published_by,
            "closed_at": iso(self.closed_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class ScenarioOutcome(BaseModel):
    """
    Grading/payout formula for one scenario.

    formula maps an output name (sales, revenue, costs, waste,
    inventory_after) to an arithmetic expression; parameters holds named
    constants the expressions may reference.
    """
    __tablename__ = "scenario_outcomes"

    scenario_id = Column(
        Integer,
        ForeignKey("scenarios.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True
    )
    notes = Column(Text, nullable=False, default="")
    hidden_notes = Column(Text, nullable=False, default="")
    formula = Column(JSON, nullable=False, default=dict)
    parameters = Column(JSON, nullable=False, default=dict)
    random_event_chance_percent = Column(Float, nullable=False, default=0.0)
    random_events = Column(JSON, nullable=False, default=list)
    summary_template = Column(Text, nullable=True)

    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "random_event_chance_percent >= 0 AND random_event_chance_percent <= 100",
            name="ck_outcome_chance_range"
        ),
    )

    def to_dict(self, include_hidden: bool = True):
        data = {
            "id": self.id,
            "scenario_id": self.scenario_id,
            "notes": self.notes,
            "formula": dict(self.formula or {}),
            "parameters": dict(self.parameters or {}),
            "random_event_chance_percent": self.random_event_chance_percent,
            "random_events": list(self.random_events or []),
            "summary_template": self.summary_template,
            "updated_at": iso(self.updated_at),
        }
        if include_hidden:
            data["hidden_notes"] = self.hidden_notes
        return data
