"""
classroom_sim/orm/variable_definition.py
Per-classroom variable schema used to validate scenario and submission values.
"""
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, JSON, ForeignKey, UniqueConstraint, Index, CheckConstraint
)

from classroom_sim.orm.base import BaseModel


class VariableScope(str, Enum):
    SCENARIO = "scenario"
    SUBMISSION = "submission"


class VariableDataType(str, Enum):
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    SELECT = "select"


class VariableDefinition(BaseModel):
    """
    One typed variable a classroom's scenarios or submissions may carry.

    Soft-deleted definitions (is_active = False) no longer take part in
    validation but keep their key reserved.
    """
    __tablename__ = "variable_definitions"

    classroom_id = Column(Integer, ForeignKey("classrooms.id", ondelete="CASCADE"), nullable=False)
    key = Column(String(100), nullable=False)
    label = Column(String(200), nullable=False)
    description = Column(String(1000), nullable=False, default="")
    applies_to = Column(String(20), nullable=False)
    data_type = Column(String(20), nullable=False)
    options = Column(JSON, nullable=False, default=list)
    default_value = Column(JSON, nullable=True)
    min_value = Column(Float, nullable=True)
    max_value = Column(Float, nullable=True)
    required = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("classroom_id", "key", name="uq_variable_definition_key"),
        CheckConstraint(
            f"applies_to IN ('{VariableScope.SCENARIO.value}', '{VariableScope.SUBMISSION.value}')",
            name="ck_variable_definition_scope"
        ),
        Index("idx_variable_definition_scope", "classroom_id", "applies_to"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "classroom_id": self.classroom_id,
            "key": self.key,
            "label": self.label,
            "description": self.description,
            "applies_to": self.applies_to,
            "data_type": self.data_type,
            "options": self.options or [],
            "default_value": self.default_value,
            "min": self.min_value,
            "max": self.max_value,
            "required": self.required,
            "is_active": self.is_active,
        }
