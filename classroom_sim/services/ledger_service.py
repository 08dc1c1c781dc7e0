"""
Ledger Service

Durable per-(scenario, member) outcome record.

At most one entry exists per (scenario_id, user_id). Entries are inserted,
never upserted: a second insert is reported as DuplicateLedgerEntry and the
unique constraint backs that check up against concurrent writers. Outside an
admin override, entries change only through the rerun cycle (delete for the
scenario, then recreate).
"""
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Mapping

from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_sim.config import settings
from classroom_sim.errors import (
    DuplicateLedgerEntry, LedgerContinuityError, NotFound, ValidationError
)
from classroom_sim.orm.classroom import Classroom
from classroom_sim.orm.ledger import LedgerEntry
from classroom_sim.services.outcome_calculator import PriorState

logger = logging.getLogger(__name__)

CONTINUITY_TOLERANCE = 0.01

# Fields an admin may change on an existing entry
OVERRIDABLE_FIELDS = (
    "sales", "revenue", "costs", "waste", "cash_before", "cash_after",
    "inventory_before", "inventory_after", "net_profit", "random_event", "summary",
)

NUMERIC_FIELDS = (
    "sales", "revenue", "costs", "waste", "cash_before", "cash_after",
    "inventory_before", "inventory_after", "net_profit",
)

REQUIRED_FIELDS = (
    "classroom_id", "scenario_id", "user_id", "week",
    "sales", "revenue", "costs", "cash_before", "cash_after", "net_profit",
)


def check_cash_continuity(cash_before: float, net_profit: float, cash_after: float) -> None:
    """Raise LedgerContinuityError unless cash_after = cash_before + net_profit."""
    expected = float(cash_before) + float(net_profit)
    if abs(expected - float(cash_after)) > CONTINUITY_TOLERANCE:
        raise LedgerContinuityError(cash_before, net_profit, cash_after)


class LedgerService:
    """Static operations over ledger entries."""

    @staticmethod
    async def get_ledger_entry(
        db: AsyncSession,
        scenario_id: int,
        user_id: int
    ) -> Optional[LedgerEntry]:
        result = await db.execute(
            select(LedgerEntry).where(
                LedgerEntry.scenario_id == scenario_id,
                LedgerEntry.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_ledger_entry_by_id(db: AsyncSession, entry_id: int) -> Optional[LedgerEntry]:
        result = await db.execute(select(LedgerEntry).where(LedgerEntry.id == entry_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_ledger_entries_by_scenario(db: AsyncSession, scenario_id: int) -> List[LedgerEntry]:
        result = await db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.scenario_id == scenario_id)
            .order_by(LedgerEntry.user_id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def delete_ledger_entries_for_scenario(db: AsyncSession, scenario_id: int) -> int:
        """
        Delete every entry for a scenario.

        Does not commit; the caller owns the transaction so a rerun can
        delete, reset and recreate atomically.
        """
        result = await db.execute(delete(LedgerEntry).where(LedgerEntry.scenario_id == scenario_id))
        deleted = result.rowcount or 0
        logger.info(f"Deleted {deleted} ledger entries for scenario {scenario_id}")
        return deleted

    @staticmethod
    async def create_ledger_entry(db: AsyncSession, data: Mapping[str, Any]) -> LedgerEntry:
        """
        Insert one ledger entry. Flushes but does not commit.

        Raises:
            ValidationError: required field missing
            LedgerContinuityError: cash_after != cash_before + net_profit
            DuplicateLedgerEntry: an entry already exists for the pair
        """
        missing = [name for name in REQUIRED_FIELDS if data.get(name) is None]
        if missing:
            raise ValidationError(f"Missing ledger fields: {', '.join(missing)}")

        check_cash_continuity(data["cash_before"], data["net_profit"], data["cash_after"])

        scenario_id = data["scenario_id"]
        user_id = data["user_id"]
        if await LedgerService.get_ledger_entry(db, scenario_id, user_id) is not None:
            raise DuplicateLedgerEntry(scenario_id, user_id)

        columns = set(LedgerEntry.__table__.columns.keys()) - {"id", "created_at", "updated_at"}
        entry = LedgerEntry(**{key: value for key, value in data.items() if key in columns})

        # A concurrent insert loses on the unique constraint; the caller rolls back
        db.add(entry)
        try:
            await db.flush()
        except IntegrityError:
            raise DuplicateLedgerEntry(scenario_id, user_id) from None

        logger.info(
            f"Ledger entry {entry.id} created for scenario {scenario_id}, user {user_id}: "
            f"net_profit={entry.net_profit}, cash_after={entry.cash_after}"
        )
        return entry

    @staticmethod
    async def get_ledger_history(
        db: AsyncSession,
        classroom_id: int,
        user_id: int,
        before_week: Optional[int] = None,
        exclude_scenario_id: Optional[int] = None
    ) -> List[LedgerEntry]:
        """Member's entries in a classroom, latest week first."""
        query = select(LedgerEntry).where(
            LedgerEntry.classroom_id == classroom_id,
            LedgerEntry.user_id == user_id,
        )
        if before_week is not None:
            query = query.where(LedgerEntry.week < before_week)
        if exclude_scenario_id is not None:
            query = query.where(LedgerEntry.scenario_id != exclude_scenario_id)
        result = await db.execute(query.order_by(LedgerEntry.week.desc(), LedgerEntry.id.desc()))
        return list(result.scalars().all())

    @staticmethod
    async def get_prior_state(
        db: AsyncSession,
        classroom: Classroom,
        user_id: int,
        week: int,
        scenario_id: Optional[int] = None
    ) -> PriorState:
        """
        Cash and inventory a member carries into the given week.

        Uses the latest earlier-week entry, falling back to the classroom's
        starting values. The scenario being computed is always excluded.
        """
        history = await LedgerService.get_ledger_history(
            db, classroom.id, user_id, before_week=week, exclude_scenario_id=scenario_id
        )
        summary = [
            {"week": e.week, "scenario_id": e.scenario_id, "net_profit": e.net_profit, "cash_after": e.cash_after}
            for e in history
        ]
        if history:
            latest = history[0]
            return PriorState(
                cash_before=float(latest.cash_after),
                inventory_before=float(latest.inventory_after or 0.0),
                history=summary,
            )

        starting = classroom.starting_balance
        if starting is None:
            starting = settings.default_starting_balance
        return PriorState(
            cash_before=float(starting),
            inventory_before=float(classroom.starting_inventory or 0.0),
            history=[],
        )

    @staticmethod
    async def override_ledger_entry(
        db: AsyncSession,
        entry_id: int,
        patch: Mapping[str, Any],
        admin_id: int
    ) -> LedgerEntry:
        """
        Apply an admin override to an existing entry and commit.

        Only OVERRIDABLE_FIELDS may change; continuity is rechecked on the
        resulting values.
        """
        entry = await LedgerService.get_ledger_entry_by_id(db, entry_id)
        if entry is None:
            raise NotFound("LedgerEntry", entry_id)

        rejected = [key for key in patch if key not in OVERRIDABLE_FIELDS]
        if rejected:
            raise ValidationError(
                f"Fields cannot be overridden: {', '.join(sorted(rejected))}",
                details={"allowed": list(OVERRIDABLE_FIELDS)}
            )

        updates: Dict[str, Any] = {}
        for key, value in patch.items():
            if key in NUMERIC_FIELDS:
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ValidationError(f"{key} must be a number")
                value = round(float(value), 2)
            updates[key] = value

        merged = {name: getattr(entry, name) for name in ("cash_before", "net_profit", "cash_after")}
        merged.update({k: v for k, v in updates.items() if k in merged})
        check_cash_continuity(merged["cash_before"], merged["net_profit"], merged["cash_after"])

        for key, value in updates.items():
            setattr(entry, key, value)
        entry.overridden = True
        entry.overridden_by = admin_id
        entry.overridden_at = datetime.utcnow()
        entry.updated_at = datetime.utcnow()

        await db.commit()
        await db.refresh(entry)
        logger.info(f"Ledger entry {entry_id} overridden by admin {admin_id}: {sorted(updates)}")
        return entry

    @staticmethod
    async def get_ledger_summary(db: AsyncSession, classroom_id: int, user_id: int) -> Dict[str, Any]:
        """Totals across a member's entries in a classroom."""
        result = await db.execute(
            select(
                func.count(LedgerEntry.id),
                func.coalesce(func.sum(LedgerEntry.revenue), 0.0),
                func.coalesce(func.sum(LedgerEntry.costs), 0.0),
                func.coalesce(func.sum(LedgerEntry.net_profit), 0.0),
            ).where(
                LedgerEntry.classroom_id == classroom_id,
                LedgerEntry.user_id == user_id,
            )
        )
        count, revenue, costs, net_profit = result.one()

        history = await LedgerService.get_ledger_history(db, classroom_id, user_id)
        latest = history[0] if history else None
        return {
            "classroom_id": classroom_id,
            "user_id": user_id,
            "entries": count,
            "total_revenue": round(float(revenue), 2),
            "total_costs": round(float(costs), 2),
            "total_net_profit": round(float(net_profit), 2),
            "current_cash": latest.cash_after if latest else None,
            "current_inventory": latest.inventory_after if latest else None,
            "latest_week": latest.week if latest else None,
        }
