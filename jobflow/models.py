# jobflow/models.py
from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class Record(BaseModel):
    """Base for persisted records.

    Attributes are snake_case; the stored JSON uses the camelCase names of the
    original browser data set (``templateId``, ``stageExecutions`` ...).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Role(str, Enum):
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    OPERATOR = "operator"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class StageStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    # Never set by the engine; kept so imported data can carry it.
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class StageCondition(str, Enum):
    ALWAYS = "always()"
    SUCCEEDED = "succeeded()"
    FAILED = "failed()"

    @classmethod
    def parse(cls, raw: Any) -> Optional["StageCondition"]:
        """Return the matching condition, or None for unknown expressions."""
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, str):
            return None
        text = raw.strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return None


def coerce_condition(value: Any) -> StageCondition:
    if value is None or (isinstance(value, str) and not value.strip()):
        return StageCondition.SUCCEEDED
    parsed = StageCondition.parse(value)
    if parsed is None:
        logger.warning("Unknown stage condition %r, treating it as always()", value)
        return StageCondition.ALWAYS
    return parsed


# ----------------- users -----------------


class User(Record):
    user_id: str
    username: str
    full_name: str = ""
    email: str = ""
    role: Role = Role.OPERATOR
    active: bool = True


class LoginRequest(BaseModel):
    username: str
    role: Role


# ----------------- templates -----------------


class Parameter(Record):
    parameter_id: str
    label: str = ""
    default_value: Any = None
    description: str = ""


class VariableDeclaration(Record):
    variable_id: str
    label: str = ""
    default_value: Any = None
    description: str = ""


class Step(Record):
    step_id: str
    step_name: str = ""
    description: str = ""
    order: int = 0
    dependencies: List[str] = Field(default_factory=list)
    requirements: List[str] = Field(default_factory=list)
    checklist: List[str] = Field(default_factory=list)


class Stage(Record):
    stage_id: str
    stage_name: str = ""
    order: int = 0
    dependencies: List[str] = Field(default_factory=list)
    condition: StageCondition = StageCondition.SUCCEEDED
    steps: List[Step] = Field(default_factory=list)

    @field_validator("condition", mode="before")
    @classmethod
    def _normalize_condition(cls, value: Any) -> StageCondition:
        return coerce_condition(value)


class Template(Record):
    template_id: str = ""
    template_name: str = ""
    description: str = ""
    parameters: List[Parameter] = Field(default_factory=list)
    variables: List[VariableDeclaration] = Field(default_factory=list)
    stages: List[Stage] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    created_by: str = ""


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


# ----------------- jobs -----------------


class ChecklistEntry(Record):
    item: str
    checked: bool = False
    notes: str = ""


class StepSource(Record):
    """Unsubstituted template text a step execution was built from."""

    step_name: str = ""
    description: str = ""
    requirements: List[str] = Field(default_factory=list)
    checklist: List[str] = Field(default_factory=list)


class StepExecution(Record):
    step_id: str
    step_name: str = ""
    description: str = ""
    dependencies: List[str] = Field(default_factory=list)
    requirements: List[str] = Field(default_factory=list)
    checklist: List[ChecklistEntry] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    assigned_to: str = ""
    notes: str = ""
    started_at: Optional[datetime] = None
    started_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    source: StepSource = Field(default_factory=StepSource)


class StageExecution(Record):
    stage_id: str
    stage_name: str = ""
    dependencies: List[str] = Field(default_factory=list)
    condition: StageCondition = StageCondition.SUCCEEDED
    status: StageStatus = StageStatus.PENDING
    step_executions: List[StepExecution] = Field(default_factory=list)

    @field_validator("condition", mode="before")
    @classmethod
    def _normalize_condition(cls, value: Any) -> StageCondition:
        return coerce_condition(value)


class JobCreate(Record):
    template_id: str
    job_name: str
    order_no: str = ""
    client: str = ""
    due_date: str = ""
    assigned_to: str = ""
    # parameter_id -> value; missing ids fall back to the template default
    parameters: Dict[str, Any] = Field(default_factory=dict)


class Job(Record):
    job_id: str
    template_id: str
    job_name: str
    order_no: str = ""
    client: str = ""
    due_date: str = ""
    assigned_to: str = ""
    status: JobStatus = JobStatus.PENDING
    created_at: datetime
    created_by: str = "unknown"
    parameters: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    stage_executions: List[StageExecution] = Field(default_factory=list)
    version: int = 0


class StepCompletion(Record):
    # Checklist as ticked in the UI; None keeps the current checklist.
    checklist_result: Optional[List[ChecklistEntry]] = None
    notes: str = ""
    variable_updates: Dict[str, Any] = Field(default_factory=dict)
    expected_version: Optional[int] = None


class StepTransition(Record):
    expected_version: Optional[int] = None


# ----------------- persisted documents -----------------


class AppData(Record):
    users: List[User] = Field(default_factory=list)
    templates: List[Template] = Field(default_factory=list)
    jobs: List[Job] = Field(default_factory=list)


class SystemConfig(Record):
    client_id: str
    client_name: str = ""
    industry: str = "general"
    features: Dict[str, bool] = Field(default_factory=dict)
