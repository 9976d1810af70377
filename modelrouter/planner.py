import logging
import time
from typing import Callable, Optional, Tuple

from .analyzer import PatternRequirementAnalyzer, RequirementAnalyzer
from .cache import CACHE_WINDOW, ResponseCache, digest_messages
from .capabilities import CapabilityRegistry
from .errors import CapabilityMismatch, UnknownModel
from .schemas import (
    ConversationTurn,
    CoderVerifierPlan,
    ParallelVerifyPlan,
    Plan,
    RequirementVector,
    SinglePlan,
    VisionAdaptivePlan,
    plan_models,
)


logger = logging.getLogger("uvicorn.error")

PLANNER_DISCRIMINATOR = "planner"


def planner_cache_key(turn: ConversationTurn) -> str:
    return digest_messages(turn.last(CACHE_WINDOW), PLANNER_DISCRIMINATOR)


class Planner:
    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        analyzer: Optional[RequirementAnalyzer] = None,
        cache: Optional[ResponseCache] = None,
        parallel_verify: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.analyzer = analyzer or PatternRequirementAnalyzer()
        self.cache = cache
        self.parallel_verify = parallel_verify
        self.clock = clock

    def plan(self, turn: ConversationTurn, has_images: Optional[bool] = None) -> Plan:
        started = self.clock()
        requirements = self.analyzer.analyze(turn)
        if has_images and not requirements.needs_images:
            requirements = requirements.model_copy(update={"needs_images": True})

        if requirements.needs_images:
            plan = self._ensure_registered(self._vision_plan(requirements, started))
            logger.info("Planner forced vision workflow (%s)", plan.selected_model)
            return plan

        key = planner_cache_key(turn)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("Planner cache hit")
                return cached

        model, reason = self._best_model(requirements)
        model, reason = self._validate(model, reason, requirements)
        plan = self._shape(model, reason, requirements, started)
        plan = self._ensure_registered(plan)
        if self.cache is not None:
            self.cache.set(key, plan)
        logger.info(
            "Planner selected %s (%s) workflow=%s",
            plan.selected_model,
            plan.reason,
            plan.workflow,
        )
        return plan

    def _verifier_for(self, requirements: RequirementVector) -> str:
        if requirements.needs_code:
            return self.registry.code_model
        return self.registry.reasoning_model

    def _latency(self, started: float) -> float:
        return max(0.0, (self.clock() - started) * 1000.0)

    def _vision_plan(self, requirements: RequirementVector, started: float) -> VisionAdaptivePlan:
        return VisionAdaptivePlan(
            selected_model=self.registry.vision_model,
            reason="image-analysis-required",
            verifier_model=self._verifier_for(requirements),
            code_model=self.registry.code_model,
            requirements=requirements,
            planner_latency_ms=self._latency(started),
        )

    def _best_model(self, req: RequirementVector) -> Tuple[str, str]:
        if req.needs_optimization and req.needs_code:
            return self.registry.optimization_model, "code-optimization"
        if req.needs_reasoning and not req.needs_code:
            return self.registry.reasoning_model, "deep-reasoning"
        if req.needs_code:
            return self.registry.code_model, "code-generation"
        if req.needs_fast_response:
            return self.registry.fast_model, "fast-response"
        return self.registry.general_model, "general"

    def _validate(self, model: str, reason: str, req: RequirementVector) -> Tuple[str, str]:
        try:
            missing = self.registry.missing_capabilities(
                model,
                needs_images=req.needs_images,
                needs_code=req.needs_code,
                needs_reasoning=req.needs_reasoning,
            )
            if missing:
                raise CapabilityMismatch(model, missing)
        except (UnknownModel, CapabilityMismatch) as exc:
            logger.info("Planner fallback to %s: %s", self.registry.general_model, exc)
            return self.registry.general_model, "fallback"
        return model, reason

    def _shape(self, model: str, reason: str, req: RequirementVector, started: float) -> Plan:
        if req.needs_optimization or req.needs_reasoning:
            plan_cls = ParallelVerifyPlan if self.parallel_verify else CoderVerifierPlan
            return plan_cls(
                selected_model=model,
                reason=reason,
                verifier_model=self._verifier_for(req),
                requirements=req,
                planner_latency_ms=self._latency(started),
            )
        return SinglePlan(
            selected_model=model,
            reason=reason,
            requirements=req,
            planner_latency_ms=self._latency(started),
        )

    def _ensure_registered(self, plan: Plan) -> Plan:
        unknown = [model for model in plan_models(plan) if model not in self.registry]
        if not unknown:
            return plan
        logger.warning("Plan references unknown model(s) %s; using general model", unknown)
        general = self.registry.general_model
        update = {"reason": "fallback"}
        for attr in ("selected_model", "verifier_model", "code_model"):
            if getattr(plan, attr, None) in unknown:
                update[attr] = general
        return plan.model_copy(update=update)
