"""
Variable Schema Service

Validates scenario and submission variable values against the classroom's
active VariableDefinitions and applies declared defaults.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_sim.errors import ValidationError, ErrorCode
from classroom_sim.orm.variable_definition import VariableDefinition, VariableDataType, VariableScope

logger = logging.getLogger(__name__)

SCALAR_TYPES = (str, int, float, bool)


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def _allowed_options(definition: VariableDefinition) -> List[Any]:
    # Options may be primitives (["a", "b"]) or objects ([{label, value}])
    allowed = []
    for option in definition.options or []:
        if isinstance(option, Mapping):
            value = option.get("value", option.get("label"))
        else:
            value = option
        if value is not None:
            allowed.append(value)
    return allowed


def check_value(definition: VariableDefinition, value: Any) -> Optional[str]:
    """Return an error message for one value, or None when it is acceptable."""
    label = definition.label or definition.key

    if _is_blank(value):
        if definition.required:
            return f"{label} is required"
        return None

    data_type = definition.data_type
    if data_type == VariableDataType.NUMBER.value:
        if isinstance(value, bool):
            return f"{label} must be a number"
        try:
            number = float(value)
        except (TypeError, ValueError):
            return f"{label} must be a number"
        if number != number or number in (float("inf"), float("-inf")):
            return f"{label} must be a number"
        if definition.min_value is not None and number < definition.min_value:
            return f"{label} must be at least {definition.min_value:g}"
        if definition.max_value is not None and number > definition.max_value:
            return f"{label} must be at most {definition.max_value:g}"
        return None

    if data_type == VariableDataType.BOOLEAN.value:
        if not isinstance(value, bool):
            return f"{label} must be a boolean"
        return None

    if data_type == VariableDataType.SELECT.value:
        allowed = _allowed_options(definition)
        if value not in allowed:
            return f"{label} must be one of: {', '.join(str(a) for a in allowed)}"
        return None

    if data_type == VariableDataType.STRING.value:
        if not isinstance(value, str):
            return f"{label} must be a string"
        return None

    return f"{label} has unknown data type '{data_type}'"


def check_shape(values: Any) -> List[Dict[str, str]]:
    """Structural checks independent of any definition."""
    if values is None:
        return []
    if not isinstance(values, Mapping):
        return [{"key": "", "message": "variables must be an object of name to value"}]
    errors = []
    for key, value in values.items():
        if not isinstance(key, str) or not key.strip():
            errors.append({"key": str(key), "message": "variable names must be non-empty strings"})
        elif value is not None and not isinstance(value, SCALAR_TYPES):
            errors.append({"key": key, "message": f"{key} must be a number, string, boolean or null"})
    return errors


def _normalize(definition: VariableDefinition, value: Any) -> Any:
    if _is_blank(value):
        return value
    if definition.data_type == VariableDataType.NUMBER.value and isinstance(value, str):
        number = float(value)
        return int(number) if number.is_integer() else number
    return value


class VariableSchema:
    """Static helpers over a classroom's variable definitions."""

    @staticmethod
    async def get_definitions(
        db: AsyncSession,
        classroom_id: int,
        applies_to: VariableScope,
        include_inactive: bool = False
    ) -> List[VariableDefinition]:
        query = select(VariableDefinition).where(
            VariableDefinition.classroom_id == classroom_id,
            VariableDefinition.applies_to == applies_to.value,
        )
        if not include_inactive:
            query = query.where(VariableDefinition.is_active.is_(True))
        result = await db.execute(query.order_by(VariableDefinition.label, VariableDefinition.id))
        return list(result.scalars().all())

    @staticmethod
    async def validate_values(
        db: AsyncSession,
        classroom_id: int,
        applies_to: VariableScope,
        values: Any
    ) -> Tuple[bool, List[Dict[str, str]]]:
        errors = check_shape(values)
        if errors:
            return False, errors
        values = values or {}
        for definition in await VariableSchema.get_definitions(db, classroom_id, applies_to):
            message = check_value(definition, values.get(definition.key))
            if message:
                errors.append({"key": definition.key, "message": message})
        return len(errors) == 0, errors

    @staticmethod
    async def apply_defaults(
        db: AsyncSession,
        classroom_id: int,
        applies_to: VariableScope,
        values: Mapping[str, Any]
    ) -> Dict[str, Any]:
        result = dict(values or {})
        for definition in await VariableSchema.get_definitions(db, classroom_id, applies_to):
            if _is_blank(result.get(definition.key)) and definition.default_value is not None:
                result[definition.key] = definition.default_value
        return result

    @staticmethod
    async def validate_and_normalize(
        db: AsyncSession,
        classroom_id: int,
        applies_to: VariableScope,
        values: Any
    ) -> Dict[str, Any]:
        """
        Validate, apply defaults and coerce numeric strings.

        Raises:
            ValidationError: with one {key, message} entry per problem
        """
        errors = check_shape(values)
        with_defaults = {}
        if not errors:
            # Defaults fill blanks first so a required variable with a default passes
            with_defaults = await VariableSchema.apply_defaults(db, classroom_id, applies_to, values or {})
            _, errors = await VariableSchema.validate_values(db, classroom_id, applies_to, with_defaults)
        if errors:
            logger.info(f"Rejected {applies_to.value} variables for classroom {classroom_id}: {errors}")
            raise ValidationError(
                f"Invalid {applies_to.value} variables: " + ", ".join(e["message"] for e in errors),
                code=ErrorCode.INVALID_VARIABLES,
                errors=errors
            )

        definitions = {
            d.key: d for d in await VariableSchema.get_definitions(db, classroom_id, applies_to)
        }
        return {
            key: _normalize(definitions[key], value) if key in definitions else value
            for key, value in with_defaults.items()
        }
