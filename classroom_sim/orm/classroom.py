"""
classroom_sim/orm/classroom.py
Classroom directory records.

The organization/member directory is owned by another service; these tables
hold only what the access check and the ledger's starting values need.
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Float, ForeignKey, UniqueConstraint, Index

from classroom_sim.orm.base import BaseModel, iso


class EnrollmentRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class Classroom(BaseModel):
    __tablename__ = "classrooms"

    organization_id = Column(Integer, nullable=False, index=True)
    name = Column(String(200), nullable=False, default="")
    starting_balance = Column(Float, nullable=True)
    starting_inventory = Column(Float, nullable=False, default=0.0)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "starting_balance": self.starting_balance,
            "starting_inventory": self.starting_inventory,
            "created_at": iso(self.created_at),
        }


class Enrollment(BaseModel):
    __tablename__ = "enrollments"

    classroom_id = Column(Integer, ForeignKey("classrooms.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, nullable=False)
    role = Column(String(20), nullable=False, default=EnrollmentRole.MEMBER.value)

    __table_args__ = (
        UniqueConstraint("classroom_id", "user_id", name="uq_enrollment_classroom_user"),
        Index("idx_enrollment_user", "user_id"),
    )
