import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from .errors import UnknownModel
from .schemas import RequirementVector


logger = logging.getLogger("uvicorn.error")


class SpeedClass(str, Enum):
    FAST = "fast"
    MEDIUM = "medium"
    SLOW = "slow"


class ModelCapability(BaseModel):
    model_id: str
    timeout_s: float
    purpose: str
    max_tokens: int = 2048
    supports_images: bool = False
    supports_code: bool = False
    supports_reasoning: bool = False
    speed: SpeedClass = SpeedClass.MEDIUM

    model_config = {"frozen": True, "protected_namespaces": ()}


PLANNING_MODEL = "phi4:latest"
FAST_MODEL = "llama3.2:latest"
GENERAL_MODEL = "qwen2.5:7b"
CODE_MODEL = "qwen2.5-coder:7b"
OPTIMIZATION_MODEL = "deepseek-coder:6.7b"
REASONING_MODEL = "deepseek-r1:7b"
VISION_MODEL = "llava:7b"
EMBEDDING_MODEL = "bge-large:latest"

DEFAULT_CAPABILITIES: List[ModelCapability] = [
    ModelCapability(
        model_id=PLANNING_MODEL,
        timeout_s=30,
        purpose="planning",
        max_tokens=512,
        supports_reasoning=True,
        speed=SpeedClass.FAST,
    ),
    ModelCapability(
        model_id=FAST_MODEL,
        timeout_s=45,
        purpose="fast-general",
        max_tokens=2048,
        speed=SpeedClass.FAST,
    ),
    ModelCapability(
        model_id=GENERAL_MODEL,
        timeout_s=90,
        purpose="general",
        max_tokens=4096,
        supports_code=True,
        supports_reasoning=True,
    ),
    ModelCapability(
        model_id=CODE_MODEL,
        timeout_s=120,
        purpose="code-generation",
        max_tokens=8192,
        supports_code=True,
    ),
    ModelCapability(
        model_id=OPTIMIZATION_MODEL,
        timeout_s=100,
        purpose="code-optimization",
        max_tokens=8192,
        supports_code=True,
    ),
    ModelCapability(
        model_id=REASONING_MODEL,
        timeout_s=150,
        purpose="reasoning-verification",
        max_tokens=4096,
        supports_reasoning=True,
        speed=SpeedClass.SLOW,
    ),
    ModelCapability(
        model_id=VISION_MODEL,
        timeout_s=90,
        purpose="vision",
        max_tokens=2048,
        supports_images=True,
    ),
    ModelCapability(
        model_id=EMBEDDING_MODEL,
        timeout_s=20,
        purpose="embeddings",
        max_tokens=512,
        speed=SpeedClass.FAST,
    ),
]


class CapabilityRegistry:
    """Read-only lookup of model id -> declared capabilities."""

    def __init__(
        self,
        capabilities: Optional[Iterable[ModelCapability]] = None,
        *,
        general_model: Optional[str] = None,
        fast_model: str = FAST_MODEL,
        code_model: str = CODE_MODEL,
        optimization_model: str = OPTIMIZATION_MODEL,
        reasoning_model: str = REASONING_MODEL,
        vision_model: str = VISION_MODEL,
    ) -> None:
        entries = DEFAULT_CAPABILITIES if capabilities is None else list(capabilities)
        self._table: Dict[str, ModelCapability] = {cap.model_id: cap for cap in entries}
        self.fast_model = fast_model
        self.code_model = code_model
        self.optimization_model = optimization_model
        self.reasoning_model = reasoning_model
        self.vision_model = vision_model
        self.general_model = GENERAL_MODEL
        if general_model and general_model != GENERAL_MODEL:
            if general_model in self._table:
                self.general_model = general_model
            else:
                logger.warning(
                    "Configured default model %s is not registered; keeping %s",
                    general_model,
                    GENERAL_MODEL,
                )

    def capabilities_of(self, model_id: Optional[str]) -> Optional[ModelCapability]:
        if not model_id:
            return None
        return self._table.get(model_id)

    def require(self, model_id: str) -> ModelCapability:
        cap = self.capabilities_of(model_id)
        if cap is None:
            raise UnknownModel(model_id)
        return cap

    def __contains__(self, model_id: object) -> bool:
        return isinstance(model_id, str) and model_id in self._table

    def list(self) -> List[ModelCapability]:
        return list(self._table.values())

    def supports_images(self, model_id: str) -> bool:
        cap = self.capabilities_of(model_id)
        return bool(cap and cap.supports_images)

    def missing_capabilities(
        self,
        model_id: str,
        *,
        needs_images: bool = False,
        needs_code: bool = False,
        needs_reasoning: bool = False,
    ) -> List[str]:
        cap = self.require(model_id)
        missing: List[str] = []
        if needs_images and not cap.supports_images:
            missing.append("images")
        if needs_code and not cap.supports_code:
            missing.append("code")
        if needs_reasoning and not cap.supports_reasoning:
            missing.append("reasoning")
        return missing

    def timeout_for(self, model_id: str, default: float = 180.0) -> float:
        cap = self.capabilities_of(model_id)
        return float(cap.timeout_s) if cap else default

    def satisfies(self, model_id: str, requirements: RequirementVector) -> bool:
        if model_id not in self:
            return False
        return not self.missing_capabilities(
            model_id,
            needs_images=requirements.needs_images,
            needs_code=requirements.needs_code,
            needs_reasoning=requirements.needs_reasoning,
        )
