"""
Outcome Calculator

Pure computation of one member's weekly outcome.

The result depends only on its arguments: scenario variables, submission
variables, the outcome configuration and the member's prior state. The
random event draw is seeded from (scenario_id, user_id), so running the
same job twice yields the same numbers and reruns are reproducible.
"""
import hashlib
import json
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional

from classroom_sim.errors import FormulaError
from classroom_sim.services.formula import compile_formula, evaluate_expression

REQUIRED_OUTPUTS = ("sales", "revenue", "costs")

DEFAULT_OUTPUTS = {
    "waste": "0",
    "inventory_after": "inventory_before",
}

# Evaluation order; each output is visible to the expressions after it
OUTPUT_ORDER = ("sales", "revenue", "costs", "waste", "inventory_after")

RESERVED_NAMES = ("cash_before", "inventory_before", "week") + OUTPUT_ORDER


@dataclass(frozen=True)
class PriorState:
    """What a member carries into a scenario from earlier weeks."""
    cash_before: float
    inventory_before: float = 0.0
    history: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class OutcomeConfig:
    formula: Dict[str, Any]
    parameters: Dict[str, Any] = field(default_factory=dict)
    random_event_chance_percent: float = 0.0
    random_events: List[Dict[str, Any]] = field(default_factory=list)
    summary_template: Optional[str] = None

    @classmethod
    def from_model(cls, outcome) -> "OutcomeConfig":
        return cls(
            formula=dict(outcome.formula or {}),
            parameters=dict(outcome.parameters or {}),
            random_event_chance_percent=float(outcome.random_event_chance_percent or 0.0),
            random_events=list(outcome.random_events or []),
            summary_template=outcome.summary_template,
        )


@dataclass
class OutcomeResult:
    sales: float
    revenue: float
    costs: float
    waste: float
    cash_before: float
    cash_after: float
    inventory_before: float
    inventory_after: float
    net_profit: float
    random_event: Optional[str]
    summary: str
    calculation_context: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def validate_outcome_config(
    formula: Any,
    parameters: Any = None,
    random_event_chance_percent: Any = 0,
    random_events: Any = None,
) -> None:
    """Static checks run when an outcome is stored. Raises FormulaError."""
    compiled = compile_formula(formula)
    missing = [name for name in REQUIRED_OUTPUTS if name not in compiled]
    if missing:
        raise FormulaError(
            f"formula is missing required outputs: {', '.join(missing)}",
            details={"missing": missing}
        )
    unknown = [name for name in compiled if name not in OUTPUT_ORDER]
    if unknown:
        raise FormulaError(
            f"formula has unknown outputs: {', '.join(unknown)}",
            details={"unknown": unknown, "allowed": list(OUTPUT_ORDER)}
        )

    if parameters is not None:
        if not isinstance(parameters, Mapping):
            raise FormulaError("parameters must be a mapping of name to number")
        for name, value in parameters.items():
            if not isinstance(name, str) or not name.isidentifier():
                raise FormulaError(f"invalid parameter name '{name}'")
            if name in RESERVED_NAMES:
                raise FormulaError(f"parameter name '{name}' is reserved")
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise FormulaError(f"parameter '{name}' must be a number")

    try:
        chance = float(random_event_chance_percent or 0)
    except (TypeError, ValueError):
        raise FormulaError("random_event_chance_percent must be a number") from None
    if chance < 0 or chance > 100:
        raise FormulaError("random_event_chance_percent must be between 0 and 100")

    for event in random_events or []:
        if not isinstance(event, Mapping) or not event.get("name"):
            raise FormulaError("each random event needs a name")
        cost = event.get("cost", 0)
        if isinstance(cost, bool) or not isinstance(cost, (int, float)):
            raise FormulaError(f"random event '{event.get('name')}' cost must be a number")


def _seed_fraction(*parts: Any) -> float:
    """Deterministic value in [0, 1) derived from the given parts."""
    payload = json.dumps([str(p) for p in parts], separators=(',', ':'))
    digest = hashlib.sha256(payload.encode('utf-8')).hexdigest()
    return int(digest[:13], 16) / float(16 ** 13)


def draw_random_event(
    scenario_id: int,
    user_id: int,
    chance_percent: float,
    events: List[Mapping[str, Any]],
) -> Optional[Mapping[str, Any]]:
    if not events or chance_percent <= 0:
        return None
    if _seed_fraction(scenario_id, user_id, "occurs") * 100 >= chance_percent:
        return None
    index = int(_seed_fraction(scenario_id, user_id, "pick") * len(events))
    return events[min(index, len(events) - 1)]


def _money(value: Any) -> float:
    return round(float(value), 2)


def _render_summary(template: Optional[str], values: Mapping[str, Any]) -> str:
    if not template:
        summary = (
            f"Sold {values['sales']:g} units for revenue of {values['revenue']:.2f} "
            f"against costs of {values['costs']:.2f}; net profit {values['net_profit']:.2f}."
        )
        if values.get("random_event"):
            summary += f" Event: {values['random_event']}."
        return summary
    try:
        return template.format(**values)
    except (KeyError, IndexError, ValueError) as exc:
        raise FormulaError(f"summary template could not be rendered: {exc}") from None


def compute_outcome(
    scenario_id: int,
    user_id: int,
    week: int,
    scenario_variables: Mapping[str, Any],
    submission_variables: Mapping[str, Any],
    config: OutcomeConfig,
    prior: PriorState,
) -> OutcomeResult:
    """
    Compute one member's outcome.

    Namespace precedence (later wins): outcome parameters, scenario
    variables, submission variables, then the reserved prior-state names.
    """
    formula = dict(DEFAULT_OUTPUTS)
    formula.update(config.formula or {})
    compile_formula(formula)

    namespace: Dict[str, Any] = {}
    namespace.update(config.parameters or {})
    namespace.update(scenario_variables or {})
    namespace.update(submission_variables or {})
    namespace["cash_before"] = float(prior.cash_before)
    namespace["inventory_before"] = float(prior.inventory_before)
    namespace["week"] = week

    outputs: Dict[str, float] = {}
    for name in OUTPUT_ORDER:
        if name not in formula:
            raise FormulaError(f"formula is missing required output '{name}'")
        value = evaluate_expression(formula[name], namespace)
        if isinstance(value, str):
            raise FormulaError(f"output '{name}' must evaluate to a number")
        outputs[name] = float(value)
        namespace[name] = outputs[name]

    event = draw_random_event(
        scenario_id, user_id, config.random_event_chance_percent, config.random_events
    )
    event_cost = float(event.get("cost", 0)) if event else 0.0

    sales = _money(max(outputs["sales"], 0.0))
    revenue = _money(outputs["revenue"])
    costs = _money(max(outputs["costs"] + event_cost, 0.0))
    waste = _money(max(outputs["waste"], 0.0))
    inventory_after = _money(max(outputs["inventory_after"], 0.0))
    cash_before = _money(prior.cash_before)
    net_profit = _money(revenue - costs)
    cash_after = _money(cash_before + net_profit)

    values = {
        "sales": sales,
        "revenue": revenue,
        "costs": costs,
        "waste": waste,
        "cash_before": cash_before,
        "cash_after": cash_after,
        "inventory_before": _money(prior.inventory_before),
        "inventory_after": inventory_after,
        "net_profit": net_profit,
        "random_event": event.get("name") if event else None,
        "week": week,
    }

    return OutcomeResult(
        sales=sales,
        revenue=revenue,
        costs=costs,
        waste=waste,
        cash_before=cash_before,
        cash_after=cash_after,
        inventory_before=values["inventory_before"],
        inventory_after=inventory_after,
        net_profit=net_profit,
        random_event=values["random_event"],
        summary=_render_summary(config.summary_template, values),
        calculation_context={
            "scenario_variables": dict(scenario_variables or {}),
            "submission_variables": dict(submission_variables or {}),
            "outcome_parameters": dict(config.parameters or {}),
            "formula": formula,
            "random_event": dict(event) if event else None,
            "prior_state": {
                "cash_before": cash_before,
                "inventory_before": values["inventory_before"],
                "history": list(prior.history),
            },
        },
    )
