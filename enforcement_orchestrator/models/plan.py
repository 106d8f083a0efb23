"""
Enforcement plan input models.

Plans arrive from the planning collaborator as JSON; they are validated with
pydantic before any batch is created from them.
"""

from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .action import ActionKind, EntityType


class PlannedAction(BaseModel):
    """One action the planner wants applied."""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: str = Field(min_length=1)
    action: ActionKind
    target_container: Optional[str] = None

    @model_validator(mode="after")
    def _check_container(self) -> "PlannedAction":
        if self.action.requires_container and not self.target_container:
            raise ValueError(f"action {self.action.value} requires target_container")
        return self


class PlanOptions(BaseModel):
    """Options bag passed through from the planner.

    Only ``dry_run`` is interpreted here; the rest is stored on the batch verbatim.
    """

    model_config = ConfigDict(extra="allow")

    dry_run: bool = False
    aggressiveness: str = "moderate"
    include_collaborations: bool = False
    include_featuring: bool = False


class EnforcementPlan(BaseModel):
    """A full plan: who, which provider, and the actions to apply."""

    owner_id: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    idempotency_key: str = Field(min_length=1)
    actions: List[PlannedAction] = Field(default_factory=list)
    options: PlanOptions = Field(default_factory=PlanOptions)

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return value.strip().lower()
