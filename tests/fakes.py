import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from modelrouter.llm import GenerateResult
from modelrouter.schemas import ConversationTurn, ImagePayload, Message


Reply = Union[str, BaseException]


class FakeInferenceClient:
    """Scripted stand-in for OllamaClient.

    Replies queued per model with `script()` are consumed in order; once a model's
    queue is empty the `default` reply (a string or a callable of model and messages)
    is used.
    """

    def __init__(
        self,
        default: Union[str, Callable[[str, Sequence[Message]], str]] = "ok",
        model_ids: Optional[List[str]] = None,
        delay_seconds: float = 0.0,
        model_delays: Optional[Dict[str, float]] = None,
    ) -> None:
        self.default = default
        self.model_ids = model_ids or ["qwen2.5:7b", "llava:7b"]
        self.delay_seconds = delay_seconds
        self.model_delays = model_delays or {}
        self.scripts: Dict[str, List[Reply]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.finished: List[str] = []
        self.closed = False

    def script(self, model: str, *replies: Reply) -> "FakeInferenceClient":
        self.scripts.setdefault(model, []).extend(replies)
        return self

    def models_called(self) -> List[str]:
        return [call["model"] for call in self.calls]

    def _next_reply(self, model: str, messages: Sequence[Message]) -> Reply:
        queue = self.scripts.get(model)
        if queue:
            return queue.pop(0)
        if callable(self.default):
            return self.default(model, messages)
        return self.default

    async def generate(
        self,
        model: str,
        messages: Sequence[Message],
        images: Optional[Sequence[ImagePayload]] = None,
        stream: bool = False,
        timeout: Optional[float] = None,
        on_chunk=None,
    ) -> GenerateResult:
        self.calls.append(
            {"model": model, "messages": list(messages), "stream": stream, "timeout": timeout}
        )
        delay = self.model_delays.get(model, self.delay_seconds)
        if delay:
            await asyncio.sleep(delay)
        self.finished.append(model)
        reply = self._next_reply(model, messages)
        if isinstance(reply, BaseException):
            raise reply
        if stream and on_chunk is not None:
            await on_chunk(reply, False)
            await on_chunk("", True)
        return GenerateResult(text=reply, raw={"model": model, "done": True}, model=model)

    async def list_models(self) -> List[str]:
        return list(self.model_ids)

    async def close(self) -> None:
        self.closed = True


def make_turn(*texts: str, images: Sequence[ImagePayload] = ()) -> ConversationTurn:
    messages = [Message(role="user", content=text) for text in texts]
    if images:
        last = messages[-1]
        messages[-1] = Message(role=last.role, content=last.content, images=list(images))
    return ConversationTurn(messages=messages)


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
