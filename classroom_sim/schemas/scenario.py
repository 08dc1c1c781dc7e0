"""
Scenario API Schemas (Pydantic)
"""
from typing import Optional, List, Dict, Any, Union

from pydantic import BaseModel, Field

VariableValue = Union[bool, int, float, str, None]


class ScenarioCreate(BaseModel):
    """Request schema for creating a scenario."""
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = ""
    variables: Dict[str, VariableValue] = Field(default_factory=dict)


class ScenarioUpdate(BaseModel):
    """Request schema for editing a scenario. Omitted fields are left alone."""
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = None
    variables: Optional[Dict[str, VariableValue]] = None

    def changed_fields(self) -> Dict[str, Any]:
        return {
            key: value
            for key, value in (("title", self.title), ("description", self.description))
            if value is not None
        }


class RandomEvent(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = ""
    cost: float = 0.0


class OutcomeUpsert(BaseModel):
    """Request schema for setting a scenario's outcome."""
    notes: Optional[str] = ""
    hidden_notes: Optional[str] = ""
    formula: Dict[str, Union[str, float, int]]
    parameters: Dict[str, float] = Field(default_factory=dict)
    random_event_chance_percent: float = Field(default=0.0, ge=0, le=100)
    random_events: List[RandomEvent] = Field(default_factory=list)
    summary_template: Optional[str] = None

    def to_data(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["random_events"] = [event.model_dump() for event in self.random_events]
        return data


class ScenarioResponse(BaseModel):
    """Response schema for scenario data."""
    id: int
    classroom_id: int
    organization_id: int
    week: int
    title: str
    description: str
    variables: Dict[str, Any]
    is_published: bool
    is_closed: bool
    published_at: Optional[str] = None
    published_by: Optional[int] = None
    closed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class PreviewResponse(BaseModel):
    scenario: Dict[str, Any]
    outcome: Dict[str, Any]
    preview_results: List[Dict[str, Any]]
    total_jobs: int
    previewed_jobs: int
