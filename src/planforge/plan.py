"""Plan data model: the document view and the executable instruction graph."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
import json
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

STEP_RESULT_FIELDS = ("output", "stdout", "stderr", "exit_code", "artifacts", "metadata")

PlanTier = Literal["quick", "standard", "strategic"]
PhaseTier = Literal["foundation", "core", "enhancement", "polish"]
FileAction = Literal["create", "modify", "reference", "delete"]
Priority = Literal["required", "recommended", "optional"]
Severity = Literal["error", "warning", "info"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class OpCode(str, Enum):
    SEARCH_CODE = "SEARCH_CODE"
    SEARCH_SEMANTIC = "SEARCH_SEMANTIC"
    READ_FILES = "READ_FILES"
    EDIT_CODE = "EDIT_CODE"
    GENERATE_TEST = "GENERATE_TEST"
    RUN_TEST = "RUN_TEST"
    RUN_COMMAND = "RUN_COMMAND"
    VERIFY_EXISTS = "VERIFY_EXISTS"
    GET_DEPENDENCIES = "GET_DEPENDENCIES"
    DEFINE_TASK = "DEFINE_TASK"
    VERIFY_TASK = "VERIFY_TASK"


class PlanContext(BaseModel):
    problem_statement: str = ""
    constraints: list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    existing_patterns: list[str] = Field(default_factory=list)


class Task(BaseModel):
    description: str
    file_references: list[str] = Field(default_factory=list)
    implementation_notes: str | None = None


class Checkpoint(BaseModel):
    id: str
    description: str = ""
    tasks: list[Task] = Field(default_factory=list)
    validation: str | None = None


class PlanPhase(BaseModel):
    name: str
    goal: str = ""
    tier: PhaseTier = "core"
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)


class FileReference(BaseModel):
    path: str
    exists: bool | None = None
    action: FileAction = "reference"
    description: str = ""

    def is_valid(self) -> bool:
        return bool(self.path) and ".." not in self.path


class AcceptanceCriterion(BaseModel):
    description: str
    testable: bool = True
    priority: Priority = "required"


class Risk(BaseModel):
    description: str
    severity: Severity = "warning"
    mitigation: str = ""


class PlanMetadata(BaseModel):
    version: int = 1
    created_at: str = Field(default_factory=utc_now)
    last_updated: str = Field(default_factory=utc_now)
    iteration: int = 1


class Instruction(BaseModel):
    """One node of the instruction graph."""

    id: str
    op: OpCode
    params: Any = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    description: str = ""
    estimated_tokens: int | None = None

    def params_text(self) -> str:
        """Compact JSON text of the params, used for substring and regex scans."""
        return json.dumps(self.params, separators=(",", ":"), ensure_ascii=False)

    def param(self, name: str) -> Any:
        if isinstance(self.params, dict):
            return self.params.get(name)
        return None


class VerifiedFile(BaseModel):
    path: str
    exists: bool


class VerifiedTarget(BaseModel):
    target: str
    resolves: bool


class ExistingPattern(BaseModel):
    pattern: str
    file: str
    line: int | None = None


class GroundingSnapshot(BaseModel):
    verified_files: list[VerifiedFile] = Field(default_factory=list)
    verified_targets: list[VerifiedTarget] = Field(default_factory=list)
    import_convention: str | None = None
    existing_patterns: list[ExistingPattern] = Field(default_factory=list)


class GroundingGate(BaseModel):
    id: str
    verification: str
    pass_criteria: str = ""
    rule: str | None = None


class Plan(BaseModel):
    title: str
    description: str = ""
    goal: str | None = None
    tier: PlanTier = "standard"
    context: PlanContext = Field(default_factory=PlanContext)
    phases: list[PlanPhase] = Field(default_factory=list)
    acceptance_criteria: list[AcceptanceCriterion] = Field(default_factory=list)
    file_references: list[FileReference] = Field(default_factory=list)
    risks: list[Risk] = Field(default_factory=list)
    metadata: PlanMetadata = Field(default_factory=PlanMetadata)
    reasoning: str | None = None
    operator_runbook: str | None = None
    grounding_gates: list[GroundingGate] = Field(default_factory=list)
    grounding_snapshot: GroundingSnapshot | None = None
    instructions: list[Instruction] | None = None

    @classmethod
    def new(cls, title: str, description: str = "", tier: PlanTier = "standard") -> "Plan":
        return cls(title=title, description=description, tier=tier)

    @property
    def effective_goal(self) -> str:
        return self.goal or self.title

    def touch(self) -> None:
        self.metadata.version += 1
        self.metadata.last_updated = utc_now()

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def validate_plan_payload(payload: Any) -> Plan:
    """Validate a raw plan payload and coerce it into a Plan."""
    try:
        return Plan.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc
