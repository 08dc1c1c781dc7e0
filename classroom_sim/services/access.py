"""
Classroom Access

Collaborator contracts for the external directory: admin access checks,
enrollment checks and read-only submission lookups. The default
implementation reads the classroom, enrollment and submission tables;
deployments that own those records elsewhere can subclass and override.
"""
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_sim.errors import Forbidden, NotFound, ErrorCode
from classroom_sim.orm.classroom import Classroom, Enrollment, EnrollmentRole
from classroom_sim.orm.submission import Submission

logger = logging.getLogger(__name__)


class ClassroomAccess:
    async def get_classroom(self, db: AsyncSession, classroom_id: int) -> Optional[Classroom]:
        result = await db.execute(select(Classroom).where(Classroom.id == classroom_id))
        return result.scalar_one_or_none()

    async def validate_admin_access(
        self,
        db: AsyncSession,
        classroom_id: int,
        actor_id: Optional[int],
        organization_id: Optional[int] = None
    ) -> Classroom:
        """
        Verify the actor administers the classroom.

        Raises:
            NotFound: classroom missing, or outside the caller's organization
            Forbidden: actor is not a classroom admin
        """
        classroom = await self.get_classroom(db, classroom_id)
        # Cross-organization lookups look like a missing classroom
        if classroom is None or (
            organization_id is not None and classroom.organization_id != organization_id
        ):
            raise NotFound("Classroom", classroom_id)

        if actor_id is None:
            raise Forbidden("Insufficient permissions: no acting user")

        result = await db.execute(
            select(Enrollment.role).where(
                Enrollment.classroom_id == classroom_id,
                Enrollment.user_id == actor_id,
            )
        )
        role = result.scalar_one_or_none()
        if role != EnrollmentRole.ADMIN.value:
            logger.warning(f"User {actor_id} denied admin access to classroom {classroom_id}")
            raise Forbidden("Insufficient permissions to administer this classroom")
        return classroom

    async def is_user_enrolled(self, db: AsyncSession, classroom_id: int, user_id: int) -> bool:
        result = await db.execute(
            select(Enrollment.id).where(
                Enrollment.classroom_id == classroom_id,
                Enrollment.user_id == user_id,
            )
        )
        return result.first() is not None

    async def require_enrollment(self, db: AsyncSession, classroom_id: int, user_id: int) -> None:
        if not await self.is_user_enrolled(db, classroom_id, user_id):
            raise Forbidden("Not enrolled in this class", code=ErrorCode.NOT_ENROLLED)


class SubmissionStore:
    """Read-only access to member submissions."""

    @staticmethod
    async def get_submission(
        db: AsyncSession,
        classroom_id: int,
        scenario_id: int,
        user_id: int
    ) -> Optional[Submission]:
        result = await db.execute(
            select(Submission).where(
                Submission.classroom_id == classroom_id,
                Submission.scenario_id == scenario_id,
                Submission.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_submissions_by_scenario(
        db: AsyncSession,
        classroom_id: int,
        scenario_id: int
    ) -> List[Submission]:
        result = await db.execute(
            select(Submission)
            .where(
                Submission.classroom_id == classroom_id,
                Submission.scenario_id == scenario_id,
            )
            .order_by(Submission.user_id, Submission.id)
        )
        return list(result.scalars().all())
