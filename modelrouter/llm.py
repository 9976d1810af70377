import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from .errors import InferenceError, InferenceTimeout
from .schemas import ImagePayload, Message


logger = logging.getLogger("uvicorn.error")

ChunkCallback = Callable[[str, bool], Awaitable[None]]

ALLOWED_ROLES = {"system", "user", "assistant"}
_DEFAULT_TIMEOUT = 180.0


@dataclass
class GenerateResult:
    text: str
    raw: Optional[Dict[str, Any]] = None
    model: Optional[str] = None


def _safe_truncate(value: str, limit: int = 500) -> str:
    if len(value) <= limit:
        return value
    return value[:limit] + f"\n\n...[TRUNCATED {len(value) - limit} chars]..."


class OllamaClient:
    """Async client for an Ollama-compatible /api/chat endpoint."""

    def __init__(self, base_url: str, debug: bool = False):
        self.base_url = base_url.rstrip("/")
        self.debug = debug
        self.client = httpx.AsyncClient(timeout=_DEFAULT_TIMEOUT)

    async def list_models(self) -> List[str]:
        try:
            resp = await self.client.get(f"{self.base_url}/api/tags")
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise InferenceError(
                "model listing failed",
                status=exc.response.status_code,
                detail=self._extract_error_detail(exc.response),
            ) from exc
        except httpx.RequestError as exc:
            raise InferenceError(f"model listing failed: {exc}") from exc
        data = resp.json()
        return [m.get("name") or m.get("model") for m in data.get("models", []) if m.get("name") or m.get("model")]

    def _build_messages(
        self,
        messages: Sequence[Message],
        images: Optional[Sequence[ImagePayload]] = None,
    ) -> List[Dict[str, Any]]:
        built: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role not in ALLOWED_ROLES:
                continue
            if not msg.content.strip() and not msg.images:
                continue
            entry: Dict[str, Any] = {"role": msg.role, "content": msg.content}
            if msg.images:
                entry["images"] = [img.to_base64() for img in msg.images]
            built.append(entry)
        if images:
            encoded = [img.to_base64() for img in images]
            for entry in reversed(built):
                if entry["role"] == "user":
                    entry.setdefault("images", []).extend(encoded)
                    break
            else:
                built.append({"role": "user", "content": "", "images": encoded})
        return built

    def _normalize_error_text(self, detail: str) -> str:
        text = detail or ""
        try:
            parsed = json.loads(text)
        except ValueError:
            return text
        if isinstance(parsed, dict):
            for key in ("error", "detail", "message"):
                val = parsed.get(key)
                if isinstance(val, str) and val.strip():
                    return val
        return text

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            return self._normalize_error_text(response.text)
        except httpx.ResponseNotRead:
            return ""

    async def generate(
        self,
        model: str,
        messages: Sequence[Message],
        images: Optional[Sequence[ImagePayload]] = None,
        stream: bool = False,
        timeout: Optional[float] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> GenerateResult:
        payload = {
            "model": model,
            "messages": self._build_messages(messages, images),
            "stream": stream,
        }
        if not payload["messages"]:
            raise InferenceError("messages must include at least one non-empty entry")
        if self.debug:
            logger.debug(
                "Sending to Ollama model=%s stream=%s messages=%s",
                model,
                stream,
                [
                    {"role": m["role"], "content": _safe_truncate(m["content"]), "images": len(m.get("images", []))}
                    for m in payload["messages"][:10]
                ],
            )
        url = f"{self.base_url}/api/chat"
        request_timeout = timeout or _DEFAULT_TIMEOUT
        try:
            if stream:
                return await self._stream(url, payload, request_timeout, on_chunk)
            resp = await self.client.post(url, json=payload, timeout=request_timeout)
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise InferenceTimeout(f"{model} timed out after {request_timeout}s") from exc
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response)
            raise InferenceError(
                f"Ollama error {exc.response.status_code}: {detail}",
                status=exc.response.status_code,
                detail=detail,
            ) from exc
        except httpx.RequestError as exc:
            raise InferenceError(f"Ollama request failed: {exc}") from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise InferenceError(
                "invalid JSON from Ollama",
                status=resp.status_code,
                detail=_safe_truncate(resp.text),
            ) from exc
        if not isinstance(data, dict):
            raise InferenceError("unexpected reply shape from Ollama", status=resp.status_code)
        message = data.get("message")
        text = (message.get("content") if isinstance(message, dict) else "") or ""
        return GenerateResult(text=text, raw=data, model=data.get("model") or model)

    async def _stream(
        self,
        url: str,
        payload: Dict[str, Any],
        timeout: float,
        on_chunk: Optional[ChunkCallback],
    ) -> GenerateResult:
        full_content = ""
        async with self.client.stream("POST", url, json=payload, timeout=timeout) as resp:
            if resp.status_code >= 400:
                await resp.aread()
                resp.raise_for_status()
            async for line in resp.aiter_lines():
                if not line.strip():
                    continue
                done = False
                try:
                    data = json.loads(line)
                except ValueError:
                    data = None
                if isinstance(data, dict):
                    message = data.get("message")
                    content = (message.get("content") if isinstance(message, dict) else "") or ""
                    done = bool(data.get("done"))
                else:
                    content = line
                if content:
                    full_content += content
                if on_chunk is not None and (content or done):
                    await on_chunk(content, done)
        return GenerateResult(text=full_content, raw=None, model=payload.get("model"))

    async def close(self) -> None:
        await self.client.aclose()
