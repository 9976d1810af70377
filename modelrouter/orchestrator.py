import logging
import time
from typing import Callable, Optional

from .analyzer import RequirementAnalyzer
from .cache import ResponseCache
from .capabilities import CapabilityRegistry
from .config import AppSettings
from .events import EventBus
from .executor import CallLimiter, InferenceClient, ModelExecutor
from .planner import Planner
from .schemas import ConversationTurn, ExecutionResult, Plan, TurnReply, plan_models
from .workflow import WorkflowRunner


logger = logging.getLogger("uvicorn.error")


class Orchestrator:
    """Plans a conversation turn and runs the chosen workflow against the inference backend.

    One instance is shared by every request; the response cache, the registry and the
    optional call limiter are the only cross-turn state.
    """

    def __init__(
        self,
        settings: AppSettings,
        client: InferenceClient,
        bus: Optional[EventBus] = None,
        registry: Optional[CapabilityRegistry] = None,
        analyzer: Optional[RequirementAnalyzer] = None,
        cache: Optional[ResponseCache] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.client = client
        self.bus = bus
        self.registry = registry or CapabilityRegistry(general_model=settings.default_model)
        self.cache = cache or ResponseCache(
            ttl_s=settings.cache_ttl_s,
            max_size=settings.cache_max_size,
            clock=clock,
        )
        limiter = None
        if settings.max_concurrent_calls:
            limiter = CallLimiter(settings.max_concurrent_calls, settings.admission_timeout_s)
        self.planner = Planner(
            self.registry,
            analyzer=analyzer,
            cache=self.cache,
            parallel_verify=settings.parallel_verify,
            clock=clock,
        )
        self.executor = ModelExecutor(
            client,
            self.registry,
            bus=bus,
            limiter=limiter,
            max_attempts=settings.max_attempts,
            retry_backoff_s=settings.retry_backoff_s,
            clock=clock,
        )
        self.runner = WorkflowRunner(
            self.executor,
            cache=self.cache,
            bus=bus,
            stream=settings.stream_responses,
            debug=settings.debug_chat,
            clock=clock,
        )

    async def plan_turn(
        self,
        turn: ConversationTurn,
        has_images: Optional[bool] = None,
        session_id: Optional[str] = None,
    ) -> Plan:
        plan = self.planner.plan(turn, has_images=has_images)
        if self.bus is not None:
            await self.bus.publish(
                session_id,
                "plan_selected",
                {
                    "model": plan.selected_model,
                    "reason": plan.reason,
                    "workflow": plan.workflow,
                    "models": plan_models(plan),
                    "requirements": plan.requirements.model_dump(exclude={"scores"}),
                    "planner_latency_ms": plan.planner_latency_ms,
                },
            )
        return plan

    async def run_turn(
        self,
        turn: ConversationTurn,
        plan: Plan,
        session_id: Optional[str] = None,
    ) -> ExecutionResult:
        return await self.runner.run(turn, plan, session_id=session_id)

    async def respond(
        self,
        turn: ConversationTurn,
        session_id: Optional[str] = None,
        has_images: Optional[bool] = None,
    ) -> TurnReply:
        plan = await self.plan_turn(turn, has_images=has_images, session_id=session_id)
        result = await self.run_turn(turn, plan, session_id=session_id)
        phases = dict(result.metrics.phase_durations_ms)
        phases["planner"] = plan.planner_latency_ms
        metrics = result.metrics.model_copy(update={"phase_durations_ms": phases})
        result = result.model_copy(update={"metrics": metrics})
        logger.info(
            "Turn answered by %s via %s (cache_hit=%s)",
            plan.selected_model,
            plan.workflow,
            metrics.cache_hit,
        )
        return TurnReply(plan=plan, result=result)

    def clear_expired_cache(self) -> int:
        removed = self.cache.clear_expired()
        if removed:
            logger.info("Cleared %s expired cache entries", removed)
        return removed

    async def close(self) -> None:
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()
