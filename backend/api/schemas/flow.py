"""Flow validation, run-start and simulation schemas."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from campaign.simulator import SubjectBehavior


class FlowValidateRequest(BaseModel):
    """A flow definition to check before it is saved or scheduled."""

    definition: dict[str, Any] = Field(description="Graph JSON with 'nodes' and 'edges'")


class FlowValidationResponse(BaseModel):
    valid: bool
    error: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class StartRunRequest(BaseModel):
    """Start a flow for one subject."""

    subject_id: str = Field(min_length=1, max_length=255, description="Recipient identifier")
    subject_context: dict[str, Any] = Field(
        default_factory=dict,
        description="Recipient data passed to the delivery service (email, name, ...)",
    )


class StartRunResponse(BaseModel):
    job_id: str = Field(description="Queued start-run job")
    flow_id: str
    subject_id: str
    status: str = "queued"


class SimulateRequest(BaseModel):
    """Dry-run a flow for a hypothetical subject."""

    behavior: SubjectBehavior = Field(default_factory=SubjectBehavior)
    start_at: Optional[datetime] = Field(default=None, description="Virtual start time (defaults to now)")
