import base64
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


Role = Literal["user", "assistant", "system"]
WorkflowShape = Literal["single", "coder-then-verifier", "parallel-verify", "vision-then-adaptive"]

ROLE_ALIASES = {
    "user": "user",
    "usuario": "user",
    "assistant": "assistant",
    "asistente": "assistant",
    "system": "system",
    "sistema": "system",
}


def normalize_role(value: Any) -> str:
    if not value:
        return "user"
    return ROLE_ALIASES.get(str(value).strip().lower(), "user")


class ImagePayload(BaseModel):
    data: bytes
    mime: str = "image/png"

    model_config = {"frozen": True, "ser_json_bytes": "base64", "val_json_bytes": "base64"}

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


class Message(BaseModel):
    role: Role = "user"
    content: str = ""
    images: List[ImagePayload] = Field(default_factory=list)

    model_config = {"frozen": True}

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> str:
        return normalize_role(value)

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, value: Any) -> str:
        return "" if value is None else str(value)


class ConversationTurn(BaseModel):
    """Prior messages plus the new one, most recent last."""

    messages: List[Message] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def has_images(self) -> bool:
        return any(msg.images for msg in self.messages)

    def text(self) -> str:
        return " ".join(msg.content for msg in self.messages if msg.content)

    def last(self, count: int) -> List[Message]:
        if count <= 0:
            return []
        return list(self.messages[-count:])

    def last_user_text(self) -> str:
        for msg in reversed(self.messages):
            if msg.role == "user" and msg.content:
                return msg.content
        return ""

    def with_system(self, content: str) -> List[Message]:
        return [*self.messages, Message(role="system", content=content)]


class RequirementVector(BaseModel):
    needs_images: bool = False
    needs_code: bool = False
    needs_optimization: bool = False
    needs_reasoning: bool = False
    needs_fast_response: bool = False
    scores: Dict[str, int] = Field(default_factory=dict)
    text_length: int = 0

    model_config = {"frozen": True}


class _PlanBase(BaseModel):
    selected_model: str
    reason: str
    requirements: RequirementVector = Field(default_factory=RequirementVector)
    planner_latency_ms: float = 0.0

    model_config = {"frozen": True}


class SinglePlan(_PlanBase):
    workflow: Literal["single"] = "single"


class CoderVerifierPlan(_PlanBase):
    workflow: Literal["coder-then-verifier"] = "coder-then-verifier"
    verifier_model: str


class ParallelVerifyPlan(_PlanBase):
    workflow: Literal["parallel-verify"] = "parallel-verify"
    verifier_model: str


class VisionAdaptivePlan(_PlanBase):
    workflow: Literal["vision-then-adaptive"] = "vision-then-adaptive"
    verifier_model: str
    code_model: str


Plan = Annotated[
    Union[SinglePlan, CoderVerifierPlan, ParallelVerifyPlan, VisionAdaptivePlan],
    Field(discriminator="workflow"),
]

_PLAN_ADAPTER: TypeAdapter = TypeAdapter(Plan)


def parse_plan(data: Dict[str, Any]) -> Plan:
    return _PLAN_ADAPTER.validate_python(data)


def plan_models(plan: Plan) -> List[str]:
    """Every model id a plan may call, selected model first."""
    models = [plan.selected_model]
    for attr in ("verifier_model", "code_model"):
        value = getattr(plan, attr, None)
        if value and value not in models:
            models.append(value)
    return models


class StepResult(BaseModel):
    step: str
    model: str
    attempts: int = 1
    duration_ms: float = 0.0
    content: str = ""
    raw: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    model_config = {"frozen": True}

    def preview(self, limit: int = 500) -> Dict[str, Any]:
        return {
            "step": self.step,
            "model": self.model,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "content_preview": self.content[:limit],
        }


class Metrics(BaseModel):
    phase_durations_ms: Dict[str, float] = Field(default_factory=dict)
    model_calls: int = 0
    retries: int = 0
    cache_hit: bool = False
    tokens_estimated: int = 0
    models_used: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class ExecutionResult(BaseModel):
    final_output: str = ""
    results: List[StepResult] = Field(default_factory=list)
    metrics: Metrics = Field(default_factory=Metrics)
    plan: Optional[Plan] = None

    model_config = {"frozen": True}

    def as_cache_hit(self) -> "ExecutionResult":
        return self.model_copy(update={"metrics": self.metrics.model_copy(update={"cache_hit": True})})

    def to_metadata(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class TurnReply(BaseModel):
    plan: Plan
    result: ExecutionResult

    model_config = {"frozen": True}


class PostMessageRequest(BaseModel):
    content: str
    role: str = "user"
    attachment_ids: List[int] = Field(default_factory=list)
    session_id: Optional[str] = None


class CreateConversationRequest(BaseModel):
    title: Optional[str] = None
