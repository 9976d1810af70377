import json

import httpx
import pytest
import respx
from httpx import Response

from modelrouter.capabilities import GENERAL_MODEL, CapabilityRegistry
from modelrouter.errors import InferenceError, InferenceTimeout, StageFailure
from modelrouter.executor import ModelExecutor
from modelrouter.llm import OllamaClient
from modelrouter.schemas import ImagePayload, Message


@pytest.mark.asyncio
async def test_list_models_hits_tags_endpoint():
    client = OllamaClient("http://ollama.test/")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("http://ollama.test/api/tags").mock(
                return_value=Response(200, json={"models": [{"name": "llava:7b"}, {"name": "qwen2.5:7b"}]})
            )
            assert await client.list_models() == ["llava:7b", "qwen2.5:7b"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_payload_shape_with_images():
    client = OllamaClient("http://ollama.test")
    captured = {}
    messages = [
        Message(role="system", content="be brief"),
        Message(role="assistant", content="   "),
        Message(role="user", content="what is this", images=[ImagePayload(data=b"abc")]),
    ]
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"model": "llava:7b", "message": {"content": "a cat"}, "done": True})

            respx_mock.post("http://ollama.test/api/chat").mock(side_effect=handler)
            result = await client.generate("llava:7b", messages, timeout=5)
    finally:
        await client.close()
    assert result.text == "a cat"
    assert result.model == "llava:7b"
    assert result.raw["done"] is True
    payload = captured["json"]
    assert payload["model"] == "llava:7b"
    assert payload["stream"] is False
    assert [m["role"] for m in payload["messages"]] == ["system", "user"]
    assert payload["messages"][-1]["images"] == ["YWJj"]


@pytest.mark.asyncio
async def test_extra_images_attach_to_last_user_message():
    client = OllamaClient("http://ollama.test")
    built = client._build_messages(
        [Message(role="user", content="first"), Message(role="assistant", content="reply")],
        images=[ImagePayload(data=b"abc")],
    )
    await client.close()
    assert built[0]["images"] == ["YWJj"]
    assert "images" not in built[1]


@pytest.mark.asyncio
async def test_streaming_concatenates_ndjson_chunks():
    client = OllamaClient("http://ollama.test")
    lines = [
        {"message": {"content": "Hel"}, "done": False},
        {"message": {"content": "lo"}, "done": False},
        {"message": {"content": ""}, "done": True},
    ]
    body = "\n".join(json.dumps(line) for line in lines) + "\n"
    chunks = []

    async def on_chunk(text, done):
        chunks.append((text, done))

    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(return_value=Response(200, content=body.encode()))
            result = await client.generate(
                "qwen2.5:7b", [Message(role="user", content="hi")], stream=True, on_chunk=on_chunk
            )
    finally:
        await client.close()
    assert result.text == "Hello"
    assert chunks == [("Hel", False), ("lo", False), ("", True)]


@pytest.mark.asyncio
async def test_error_status_maps_to_inference_error():
    client = OllamaClient("http://ollama.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(
                return_value=Response(404, json={"error": "model 'ghost' not found"})
            )
            with pytest.raises(InferenceError) as excinfo:
                await client.generate("ghost", [Message(role="user", content="hi")])
    finally:
        await client.close()
    assert excinfo.value.status == 404
    assert excinfo.value.detail == "model 'ghost' not found"


@pytest.mark.asyncio
async def test_streaming_error_status_maps_to_inference_error():
    client = OllamaClient("http://ollama.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(
                return_value=Response(500, json={"error": "out of memory"})
            )
            with pytest.raises(InferenceError) as excinfo:
                await client.generate("qwen2.5:7b", [Message(role="user", content="hi")], stream=True)
    finally:
        await client.close()
    assert excinfo.value.status == 500
    assert "out of memory" in excinfo.value.detail


@pytest.mark.asyncio
async def test_timeout_maps_to_inference_timeout():
    client = OllamaClient("http://ollama.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(side_effect=httpx.ReadTimeout("slow"))
            with pytest.raises(InferenceTimeout):
                await client.generate("qwen2.5:7b", [Message(role="user", content="hi")], timeout=1)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_connection_error_maps_to_inference_error():
    client = OllamaClient("http://ollama.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(InferenceError) as excinfo:
                await client.generate("qwen2.5:7b", [Message(role="user", content="hi")])
    finally:
        await client.close()
    assert excinfo.value.status is None


@pytest.mark.asyncio
async def test_non_json_body_maps_to_inference_error():
    client = OllamaClient("http://ollama.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(
                return_value=Response(200, content=b"<html>proxy error</html>")
            )
            with pytest.raises(InferenceError) as excinfo:
                await client.generate("qwen2.5:7b", [Message(role="user", content="hi")])
    finally:
        await client.close()
    assert excinfo.value.status == 200
    assert "proxy error" in excinfo.value.detail


@pytest.mark.asyncio
async def test_non_json_body_is_retried_then_fails_the_stage():
    client = OllamaClient("http://ollama.test")
    executor = ModelExecutor(client, CapabilityRegistry(), max_attempts=2, retry_backoff_s=0.0)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post("http://ollama.test/api/chat").mock(
                return_value=Response(200, content=b"<html>proxy error</html>")
            )
            with pytest.raises(StageFailure) as excinfo:
                await executor.execute([Message(role="user", content="hi")], GENERAL_MODEL)
    finally:
        await client.close()
    assert route.call_count == 2
    assert excinfo.value.attempts == 2
    assert isinstance(excinfo.value.last_error, InferenceError)


@pytest.mark.asyncio
async def test_empty_turn_maps_to_inference_error():
    client = OllamaClient("http://ollama.test")
    try:
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.post("http://ollama.test/api/chat")
            with pytest.raises(InferenceError):
                await client.generate("qwen2.5:7b", [Message(role="user", content="   ")])
    finally:
        await client.close()
    assert route.call_count == 0


@pytest.mark.asyncio
async def test_streaming_skips_non_object_json_lines():
    client = OllamaClient("http://ollama.test")
    body = '["junk"]\n{"message": "oops"}\n{"message": {"content": "Hi"}, "done": true}\n'
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(return_value=Response(200, content=body.encode()))
            result = await client.generate("qwen2.5:7b", [Message(role="user", content="hi")], stream=True)
    finally:
        await client.close()
    assert result.text == '["junk"]Hi'
