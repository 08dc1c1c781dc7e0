"""
classroom_sim/orm/ledger.py
Committed per-(scenario, member) financial outcome.

Rules:
- One entry per (scenario_id, user_id); a second insert fails on the
  unique constraint instead of double-crediting
- cash_after = cash_before + net_profit
- Entries change only through an admin override or the rerun cycle
  (delete for scenario, then recreate)
"""
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, DateTime, JSON, ForeignKey,
    UniqueConstraint, Index
)

from classroom_sim.orm.base import BaseModel, iso


class LedgerEntry(BaseModel):
    __tablename__ = "ledger_entries"

    classroom_id = Column(Integer, ForeignKey("classrooms.id", ondelete="CASCADE"), nullable=False)
    scenario_id = Column(Integer, ForeignKey("scenarios.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, nullable=False)
    submission_id = Column(Integer, ForeignKey("submissions.id", ondelete="SET NULL"), nullable=True)
    job_id = Column(Integer, ForeignKey("simulation_jobs.id", ondelete="SET NULL"), nullable=True)
    week = Column(Integer, nullable=False)

    sales = Column(Float, nullable=False)
    revenue = Column(Float, nullable=False)
    costs = Column(Float, nullable=False)
    waste = Column(Float, nullable=False, default=0.0)
    cash_before = Column(Float, nullable=False)
    cash_after = Column(Float, nullable=False)
    inventory_before = Column(Float, nullable=False, default=0.0)
    inventory_after = Column(Float, nullable=False, default=0.0)
    net_profit = Column(Float, nullable=False)
    random_event = Column(String(200), nullable=True)
    summary = Column(Text, nullable=False, default="")
    calculation_context = Column(JSON, nullable=True)

    overridden = Column(Boolean, nullable=False, default=False)
    overridden_by = Column(Integer, nullable=True)
    overridden_at = Column(DateTime, nullable=True)

    created_by = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("scenario_id", "user_id", name="uq_ledger_scenario_user"),
        Index("idx_ledger_member_week", "classroom_id", "user_id", "week"),
        Index("idx_ledger_scenario", "scenario_id"),
    )

    def to_dict(self, include_context: bool = False):
        data = {
            "id": self.id,
            "classroom_id": self.classroom_id,
            "scenario_id": self.scenario_id,
            "user_id": self.user_id,
            "submission_id": self.submission_id,
            "job_id": self.job_id,
            "week": self.week,
            "sales": self.sales,
            "revenue": self.revenue,
            "costs": self.costs,
            "waste": self.waste,
            "cash_before": self.cash_before,
            "cash_after": self.cash_after,
            "inventory_before": self.inventory_before,
            "inventory_after": self.inventory_after,
            "net_profit": self.net_profit,
            "random_event": self.random_event,
            "summary": self.summary,
            "overridden": self.overridden,
            "overridden_by": self.overridden_by,
            "overridden_at": iso(self.overridden_at),
            "created_at": iso(self.created_at),
        }
        if include_context:
            data["calculation_context"] = self.calculation_context
        return data
