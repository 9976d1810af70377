import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .analyzer import needs_explanation, needs_structuring
from .cache import CACHE_WINDOW, ResponseCache, digest_messages
from .errors import StageFailure
from .events import EventBus
from .executor import ExecutionOutcome, ModelExecutor
from .prompts import (
    ACT_AS_VERIFIER,
    EXPLANATION_REQUEST,
    SECTION_STRUCTURED,
    SECTION_VERIFICATION,
    SECTION_VISION,
    STRUCTURING_REQUEST,
    STRUCTURING_SYSTEM,
    VERIFIER_SYSTEM,
    VERIFY_REQUEST,
    section,
)
from .schemas import ConversationTurn, ExecutionResult, Message, Metrics, Plan, StepResult, VisionAdaptivePlan


logger = logging.getLogger("uvicorn.error")

STEP_PHASES = {"single": "coder", "verifier-parallel": "verifier"}


def workflow_cache_key(turn: ConversationTurn, plan: Plan) -> str:
    return digest_messages(turn.last(CACHE_WINDOW), f"{plan.selected_model}:{plan.workflow}")


class _RunLog:
    """Accumulates step results and metrics for one turn."""

    def __init__(self) -> None:
        self.results: List[StepResult] = []
        self.phases: Dict[str, float] = {}
        self.model_calls = 0
        self.retries = 0

    def record(self, step: str, outcome: ExecutionOutcome, duration_ms: float) -> str:
        content = outcome.response.text or ""
        self.results.append(
            StepResult(
                step=step,
                model=outcome.model,
                attempts=outcome.attempts,
                duration_ms=duration_ms,
                content=content,
                raw=outcome.response.raw,
            )
        )
        self._count(step, outcome.attempts, duration_ms)
        return content

    def record_failure(self, step: str, exc: StageFailure, duration_ms: float) -> None:
        self.results.append(
            StepResult(
                step=step,
                model=exc.model,
                attempts=exc.attempts,
                duration_ms=duration_ms,
                error=str(exc.last_error or exc),
            )
        )
        self._count(step, exc.attempts, duration_ms)

    def _count(self, step: str, attempts: int, duration_ms: float) -> None:
        phase = STEP_PHASES.get(step, step)
        self.phases[phase] = self.phases.get(phase, 0.0) + duration_ms
        self.model_calls += attempts
        self.retries += max(0, attempts - 1)

    def build(self, final_output: str, plan: Optional[Plan], total_ms: float) -> ExecutionResult:
        phases = dict(self.phases)
        phases["total"] = total_ms
        models_used: List[str] = []
        for res in self.results:
            if res.error is None and res.model not in models_used:
                models_used.append(res.model)
        metrics = Metrics(
            phase_durations_ms=phases,
            model_calls=self.model_calls,
            retries=self.retries,
            cache_hit=False,
            tokens_estimated=len(final_output) // 4,
            models_used=models_used,
        )
        return ExecutionResult(final_output=final_output, results=list(self.results), metrics=metrics, plan=plan)


class WorkflowRunner:
    def __init__(
        self,
        executor: ModelExecutor,
        *,
        cache: Optional[ResponseCache] = None,
        bus: Optional[EventBus] = None,
        stream: bool = False,
        debug: bool = False,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.executor = executor
        self.cache = cache
        self.bus = bus
        self.stream = stream
        self.debug = debug
        self.clock = clock

    def _now(self) -> float:
        if self.clock is not None:
            return self.clock()
        return asyncio.get_running_loop().time()

    def _elapsed(self, started: float) -> float:
        return max(0.0, (self._now() - started) * 1000.0)

    async def _publish(self, session_id: Optional[str], event: str, payload: Dict[str, Any]) -> None:
        if self.bus is not None:
            await self.bus.publish(session_id, event, payload)

    async def run(self, turn: ConversationTurn, plan: Plan, session_id: Optional[str] = None) -> ExecutionResult:
        has_images = turn.has_images or plan.requirements.needs_images or plan.workflow == "vision-then-adaptive"
        use_cache = self.cache is not None and not has_images
        key = workflow_cache_key(turn, plan) if use_cache else None
        started = self._now()
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                result = cached.as_cache_hit()
                logger.info("Workflow cache hit for %s/%s", plan.selected_model, plan.workflow)
                await self._publish(
                    session_id,
                    "performance_metrics",
                    {**result.metrics.model_dump(), "from_cache": True},
                )
                return result

        log = _RunLog()
        try:
            if plan.workflow == "single":
                final_output = await self._single(log, turn, plan, session_id)
            elif plan.workflow == "coder-then-verifier":
                final_output = await self._coder_then_verifier(log, turn, plan, session_id)
            elif plan.workflow == "parallel-verify":
                final_output = await self._parallel_verify(log, turn, plan, session_id)
            else:
                final_output = await self._vision_then_adaptive(log, turn, plan, session_id)
        except StageFailure as exc:
            exc.partial = log.build("", plan, self._elapsed(started))
            await self._publish(
                session_id,
                "workflow_failed",
                {
                    "step": exc.step,
                    "model": exc.model,
                    "attempts": exc.attempts,
                    "error": str(exc.last_error or exc),
                    "results": [res.preview() for res in exc.partial.results],
                },
            )
            raise

        result = log.build(final_output, plan, self._elapsed(started))
        metrics = result.metrics
        logger.info(
            "Workflow %s metrics: total=%.0fms calls=%s retries=%s tokens~%s",
            plan.workflow,
            metrics.phase_durations_ms.get("total", 0.0),
            metrics.model_calls,
            metrics.retries,
            metrics.tokens_estimated,
        )
        await self._publish(session_id, "performance_metrics", metrics.model_dump())
        if self.debug:
            await self._publish(
                session_id,
                "model_orch_results",
                {"plan": plan.model_dump(mode="json"), "results": [res.preview() for res in result.results]},
            )
        if use_cache:
            self.cache.set(key, result)
        return result

    async def _stage(
        self,
        log: _RunLog,
        messages: Sequence[Message],
        model: str,
        step: str,
        session_id: Optional[str],
        has_images: bool = False,
        stream: bool = False,
    ) -> str:
        started = self._now()
        try:
            outcome = await self.executor.execute(
                messages,
                model,
                session_id=session_id,
                has_images=has_images,
                step=step,
                stream=stream,
            )
        except StageFailure as exc:
            log.record_failure(step, exc, self._elapsed(started))
            raise
        content = log.record(step, outcome, self._elapsed(started))
        await self._publish(
            session_id,
            "stage_completed",
            {"step": step, "model": outcome.model, "attempts": outcome.attempts},
        )
        return content

    async def _single(self, log: _RunLog, turn: ConversationTurn, plan: Plan, session_id: Optional[str]) -> str:
        return await self._stage(log, turn.messages, plan.selected_model, "single", session_id, stream=self.stream)

    async def _coder_then_verifier(
        self, log: _RunLog, turn: ConversationTurn, plan: Plan, session_id: Optional[str]
    ) -> str:
        coder_output = await self._stage(
            log, turn.messages, plan.selected_model, "coder", session_id, stream=self.stream
        )
        verify_prompt = [
            Message(role="system", content=VERIFIER_SYSTEM),
            Message(role="user", content=VERIFY_REQUEST.format(content=coder_output)),
        ]
        verifier_output = await self._stage(log, verify_prompt, plan.verifier_model, "verifier", session_id)
        return f"{coder_output}\n\n{section(SECTION_VERIFICATION, verifier_output)}"

    async def _timed(
        self,
        messages: Sequence[Message],
        model: str,
        step: str,
        session_id: Optional[str],
    ) -> Tuple[Union[ExecutionOutcome, StageFailure], float]:
        started = self._now()
        try:
            outcome = await self.executor.execute(messages, model, session_id=session_id, step=step)
        except StageFailure as exc:
            return exc, self._elapsed(started)
        return outcome, self._elapsed(started)

    async def _parallel_verify(
        self, log: _RunLog, turn: ConversationTurn, plan: Plan, session_id: Optional[str]
    ) -> str:
        started = self._now()
        (coder, coder_ms), (verifier, verifier_ms) = await asyncio.gather(
            self._timed(turn.messages, plan.selected_model, "coder", session_id),
            self._timed(turn.with_system(ACT_AS_VERIFIER), plan.verifier_model, "verifier-parallel", session_id),
        )
        log.phases["parallel"] = self._elapsed(started)
        failure: Optional[StageFailure] = None
        outputs: List[str] = []
        for step, outcome, duration in (("coder", coder, coder_ms), ("verifier-parallel", verifier, verifier_ms)):
            if isinstance(outcome, StageFailure):
                log.record_failure(step, outcome, duration)
                failure = failure or outcome
            else:
                outputs.append(log.record(step, outcome, duration))
        if failure is not None:
            raise failure
        coder_output, verifier_output = outputs
        return f"{coder_output}\n\n{section(SECTION_VERIFICATION, verifier_output)}"

    async def _vision_then_adaptive(
        self, log: _RunLog, turn: ConversationTurn, plan: VisionAdaptivePlan, session_id: Optional[str]
    ) -> str:
        vision_text = await self._stage(
            log, turn.messages, plan.selected_model, "vision", session_id, has_images=True
        )
        sections: List[Tuple[str, str]] = [(SECTION_VISION, vision_text)]

        if needs_structuring(vision_text):
            prompt = [
                Message(role="system", content=STRUCTURING_SYSTEM),
                Message(
                    role="user",
                    content=STRUCTURING_REQUEST.format(request=turn.last_user_text(), vision=vision_text),
                ),
            ]
            structured = await self._stage(log, prompt, plan.code_model, "coder", session_id)
            sections.append((SECTION_STRUCTURED, structured))

        if needs_explanation(vision_text):
            accumulated = "\n\n".join(section(label, text) for label, text in sections)
            prompt = [
                Message(role="system", content=VERIFIER_SYSTEM),
                Message(role="user", content=EXPLANATION_REQUEST.format(content=accumulated)),
            ]
            verified = await self._stage(log, prompt, plan.verifier_model, "verifier", session_id)
            sections.append((SECTION_VERIFICATION, verified))

        return "\n\n".join(section(label, text) for label, text in sections)
