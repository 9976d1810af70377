import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Sequence

from .capabilities import CapabilityRegistry
from .errors import AdmissionTimeout, EmptyResponse, IncapableResponse, InferenceTimeout, StageFailure, TransportFailure
from .events import EventBus
from .llm import ChunkCallback, GenerateResult
from .schemas import ImagePayload, Message


logger = logging.getLogger("uvicorn.error")

INCAPABLE_PATTERNS = [
    re.compile(
        r"\b(?:can ?not|can't|cannot|unable to|not able to|am not able to)\s+(?:see|view|process|analy[sz]e|read|interpret|open)"
        r"\s+(?:the\s+|this\s+|any\s+)?(?:images?|pictures?|photos?|attachments?)",
        re.IGNORECASE,
    ),
    re.compile(r"\btext[- ]only\s+(?:model|assistant|ai)\b", re.IGNORECASE),
    re.compile(r"\b(?:don't|do not)\s+have\s+(?:the\s+ability|vision|access)\b[^.]*\b(?:images?|see)\b", re.IGNORECASE),
    re.compile(
        r"\bno\s+puedo\s+(?:ver|procesar|analizar|leer|interpretar)\s+(?:la\s+|las\s+|esta\s+)?(?:im[aá]gen(?:es)?|fotos?)",
        re.IGNORECASE,
    ),
    re.compile(r"\bsolo\s+(?:puedo\s+)?(?:procesar\s+)?texto\b", re.IGNORECASE),
]


def looks_incapable(text: str) -> bool:
    return any(pattern.search(text or "") for pattern in INCAPABLE_PATTERNS)


class InferenceClient(Protocol):
    async def generate(
        self,
        model: str,
        messages: Sequence[Message],
        images: Optional[Sequence[ImagePayload]] = None,
        stream: bool = False,
        timeout: Optional[float] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> GenerateResult: ...


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FALLBACK = "fallback"


@dataclass
class AttemptTransition:
    outcome: AttemptOutcome
    model: str
    next_model: str
    response: Optional[GenerateResult] = None
    error: Optional[BaseException] = None
    duration_ms: float = 0.0


@dataclass
class ExecutionOutcome:
    response: GenerateResult
    model: str
    attempts: int
    transitions: List[AttemptTransition] = field(default_factory=list)


class CallLimiter:
    """Caps concurrent inference calls; waiters give up after acquire_timeout_s."""

    def __init__(self, max_concurrent: int, acquire_timeout_s: Optional[float] = None) -> None:
        self.max_concurrent = max(1, int(max_concurrent))
        self.acquire_timeout_s = acquire_timeout_s
        self._sem = asyncio.Semaphore(self.max_concurrent)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(self._sem.acquire(), timeout=self.acquire_timeout_s)
        except asyncio.TimeoutError as exc:
            raise AdmissionTimeout(
                f"no inference slot free after {self.acquire_timeout_s}s ({self.max_concurrent} in flight)"
            ) from exc
        try:
            yield
        finally:
            self._sem.release()


@asynccontextmanager
async def _no_limit() -> AsyncIterator[None]:
    yield


class ModelExecutor:
    def __init__(
        self,
        client: InferenceClient,
        registry: CapabilityRegistry,
        *,
        bus: Optional[EventBus] = None,
        limiter: Optional[CallLimiter] = None,
        max_attempts: int = 2,
        retry_backoff_s: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.bus = bus
        self.limiter = limiter
        self.max_attempts = max(1, int(max_attempts))
        self.retry_backoff_s = retry_backoff_s
        self.sleep = sleep
        self.clock = clock

    def _now(self) -> float:
        if self.clock is not None:
            return self.clock()
        return asyncio.get_running_loop().time()

    async def _publish(self, session_id: Optional[str], event: str, payload: dict) -> None:
        if self.bus is not None:
            await self.bus.publish(session_id, event, payload)

    def _slot(self):
        if self.limiter is None:
            return _no_limit()
        return self.limiter.slot()

    async def execute(
        self,
        messages: Sequence[Message],
        model: str,
        session_id: Optional[str] = None,
        has_images: bool = False,
        max_attempts: Optional[int] = None,
        step: str = "single",
        stream: bool = False,
    ) -> ExecutionOutcome:
        budget = max(1, int(max_attempts or self.max_attempts))
        vision_model = self.registry.vision_model
        target = model
        if has_images and not self.registry.supports_images(target):
            logger.info("Step %s: %s cannot read images; using %s", step, target, vision_model)
            await self._publish(
                session_id,
                "model_fallback",
                {"step": step, "from": target, "to": vision_model, "reason": "images-unsupported"},
            )
            target = vision_model

        transitions: List[AttemptTransition] = []
        calls = 0
        failures = 0
        free_fallback = True
        last_error: Optional[BaseException] = None
        while failures < budget:
            calls += 1
            transition = await self._attempt(messages, target, session_id, has_images, step, stream, calls)
            transitions.append(transition)
            if transition.outcome is AttemptOutcome.SUCCESS and transition.response is not None:
                return ExecutionOutcome(
                    response=transition.response,
                    model=transition.model,
                    attempts=calls,
                    transitions=transitions,
                )
            last_error = transition.error
            if transition.outcome is AttemptOutcome.FALLBACK:
                logger.warning("Step %s: %s declared it cannot handle images; switching to %s", step, target, transition.next_model)
                await self._publish(
                    session_id,
                    "model_fallback",
                    {"step": step, "from": target, "to": transition.next_model, "reason": "incapable-response"},
                )
                target = transition.next_model
                if free_fallback:
                    free_fallback = False
                    continue
            failures += 1
            if failures >= budget:
                break
            delay = failures * self.retry_backoff_s
            logger.warning(
                "Step %s: attempt %s on %s failed (%s); retrying on %s in %.1fs",
                step,
                calls,
                transition.model,
                last_error,
                transition.next_model,
                delay,
            )
            await self._publish(
                session_id,
                "model_retry",
                {
                    "step": step,
                    "model": transition.model,
                    "next_model": transition.next_model,
                    "attempt": calls,
                    "error": str(last_error),
                    "delay_s": delay,
                },
            )
            if delay > 0:
                await self.sleep(delay)
            target = transition.next_model
        logger.error("Step %s exhausted %s attempt(s) on %s: %s", step, calls, target, last_error)
        raise StageFailure(step, target, calls, last_error)

    async def _attempt(
        self,
        messages: Sequence[Message],
        model: str,
        session_id: Optional[str],
        has_images: bool,
        step: str,
        stream: bool,
        attempt: int,
    ) -> AttemptTransition:
        vision_model = self.registry.vision_model
        retry_model = vision_model if has_images else model
        timeout = self.registry.timeout_for(model)
        await self._publish(session_id, "model_attempt", {"step": step, "model": model, "attempt": attempt})

        on_chunk = None
        if stream and session_id:

            async def on_chunk(chunk: str, done: bool) -> None:
                await self._publish(
                    session_id,
                    "chat_stream",
                    {"step": step, "model": model, "chunk": chunk, "done": done},
                )

        started = self._now()
        try:
            async with self._slot():
                response = await asyncio.wait_for(
                    self.client.generate(model, messages, stream=stream, timeout=timeout, on_chunk=on_chunk),
                    timeout=timeout,
                )
            if not (response.text or "").strip():
                raise EmptyResponse(model)
        except asyncio.TimeoutError:
            return AttemptTransition(
                outcome=AttemptOutcome.RETRYABLE,
                model=model,
                next_model=retry_model,
                error=InferenceTimeout(f"{model} timed out after {timeout}s"),
                duration_ms=self._elapsed(started),
            )
        except TransportFailure as exc:
            return AttemptTransition(
                outcome=AttemptOutcome.RETRYABLE,
                model=model,
                next_model=retry_model,
                error=exc,
                duration_ms=self._elapsed(started),
            )
        duration_ms = self._elapsed(started)
        if has_images and model != vision_model and looks_incapable(response.text):
            return AttemptTransition(
                outcome=AttemptOutcome.FALLBACK,
                model=model,
                next_model=vision_model,
                response=response,
                error=IncapableResponse(model, response.text[:200]),
                duration_ms=duration_ms,
            )
        return AttemptTransition(
            outcome=AttemptOutcome.SUCCESS,
            model=model,
            next_model=model,
            response=response,
            duration_ms=duration_ms,
        )

    def _elapsed(self, started: float) -> float:
        return max(0.0, (self._now() - started) * 1000.0)
