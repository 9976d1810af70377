import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from modelrouter.capabilities import CODE_MODEL, FAST_MODEL, VISION_MODEL
from modelrouter.main import stream_events
from tests.fakes import FakeInferenceClient


async def new_conversation(client) -> str:
    res = await client.post("/api/conversations", json={"title": "Chat"})
    assert res.status_code == 200
    return res.json()["id"]


@pytest.mark.asyncio
async def test_models_lists_registry_and_backend(client):
    res = await client.get("/api/models")
    assert res.status_code == 200
    data = res.json()
    assert VISION_MODEL in [m["model_id"] for m in data["models"]]
    assert data["available"] == client.fake_client.model_ids
    assert data["error"] is None


@pytest.mark.asyncio
async def test_conversation_crud(client):
    res = await client.post("/api/conversations")
    assert res.status_code == 200
    assert res.json()["title"] == "New conversation"
    listing = await client.get("/api/conversations")
    assert len(listing.json()["conversations"]) == 1
    missing = await client.get("/api/conversations/nope")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_post_message_persists_reply_with_metadata(client):
    convo_id = await new_conversation(client)
    res = await client.post(f"/api/conversations/{convo_id}/messages", json={"content": "hola, gracias"})
    assert res.status_code == 200
    data = res.json()
    assert data["user_message"]["content"] == "hola, gracias"
    assert data["assistant_message"]["content"] == "ok"
    assert data["orchestration"]["plan"]["selected_model"] == FAST_MODEL
    assert data["orchestration"]["metrics"]["model_calls"] == 1

    convo = (await client.get(f"/api/conversations/{convo_id}")).json()
    assert [m["role"] for m in convo["messages"]] == ["user", "assistant"]
    metadata = convo["messages"][1]["metadata"]
    assert metadata["final_output"] == "ok"
    assert metadata["plan"]["workflow"] == "single"


@pytest.mark.asyncio
async def test_history_is_sent_with_the_next_turn(client):
    convo_id = await new_conversation(client)
    await client.post(f"/api/conversations/{convo_id}/messages", json={"content": "hola"})
    await client.post(f"/api/conversations/{convo_id}/messages", json={"content": "tell me a story"})
    last_call = client.fake_client.calls[-1]
    assert [m.content for m in last_call["messages"]] == ["hola", "ok", "tell me a story"]


@pytest.mark.asyncio
async def test_image_upload_routes_to_vision(client):
    convo_id = await new_conversation(client)
    client.fake_client.script(VISION_MODEL, "| Item | Qty |\n| Bolt | 4 |")
    client.fake_client.script(CODE_MODEL, '[{"Item": "Bolt", "Qty": 4}]')
    files = {"file": ("scan.png", b"\x89PNG", "image/png")}
    upload = await client.post("/api/uploads", files=files, data={"conversation_id": convo_id})
    assert upload.status_code == 200
    attachment_id = upload.json()["id"]

    res = await client.post(
        f"/api/conversations/{convo_id}/messages",
        json={"content": "extract the table as JSON", "attachment_ids": [attachment_id]},
    )
    assert res.status_code == 200
    data = res.json()
    assert data["orchestration"]["plan"]["workflow"] == "vision-then-adaptive"
    assert "--- STRUCTURED OUTPUT ---" in data["assistant_message"]["content"]
    vision_call = client.fake_client.calls[0]
    assert vision_call["model"] == VISION_MODEL
    assert vision_call["messages"][-1].images[0].data == b"\x89PNG"


@pytest.mark.asyncio
async def test_text_upload_is_extracted(client):
    files = {"file": ("notes.txt", b"buy milk", "text/plain")}
    upload = await client.post("/api/uploads", files=files)
    assert upload.status_code == 200
    record = await client.app.state.db.get_attachment(upload.json()["id"])
    assert record["extracted_text"] == "buy milk"


@pytest.mark.asyncio
async def test_upload_rejects_path_traversal_names(client):
    files = {"file": ("../evil.png", b"data", "image/png")}
    res = await client.post("/api/uploads", files=files)
    assert res.status_code == 400
    assert "Invalid filename" in res.text


@pytest.mark.asyncio
async def test_upload_rejects_unsupported_types(client):
    files = {"file": ("tool.exe", b"MZ", "application/octet-stream")}
    res = await client.post("/api/uploads", files=files)
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_upload_rejects_oversize(app_factory):
    app, _ = app_factory(upload_max_mb=0)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            files = {"file": ("big.png", b"x", "image/png")}
            res = await client.post("/api/uploads", files=files)
            assert res.status_code == 400
            assert "File too large" in res.text


@pytest.mark.asyncio
async def test_exhausted_stage_returns_502_with_partial(app_factory):
    app, fake = app_factory(fake_client=FakeInferenceClient(default=""))
    async with LifespanManager(app):
        bus = app.state.bus
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            convo_id = await new_conversation(client)
            queue = await bus.subscribe(convo_id)
            res = await client.post(f"/api/conversations/{convo_id}/messages", json={"content": "tell me a story"})
            assert res.status_code == 502
            detail = res.json()["detail"]
            assert detail["attempts"] == 2
            assert detail["partial"]["results"][0]["error"]
            events = []
            while not queue.empty():
                events.append(queue.get_nowait()["event_type"])
            assert events[-1] == "error_chat"
            convo = (await client.get(f"/api/conversations/{convo_id}")).json()
            assert [m["role"] for m in convo["messages"]] == ["user"]
    assert len(fake.calls) == 2


@pytest.mark.asyncio
async def test_empty_message_is_rejected(client):
    convo_id = await new_conversation(client)
    res = await client.post(f"/api/conversations/{convo_id}/messages", json={"content": "  "})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_unknown_attachment_is_rejected_before_storing(client):
    convo_id = await new_conversation(client)
    res = await client.post(
        f"/api/conversations/{convo_id}/messages",
        json={"content": "", "attachment_ids": [999]},
    )
    assert res.status_code == 409
    assert res.json()["detail"]["missing"] == [999]
    assert client.fake_client.calls == []
    convo = (await client.get(f"/api/conversations/{convo_id}")).json()
    assert convo["messages"] == []


@pytest.mark.asyncio
async def test_session_sse_stream_receives_events(app_factory):
    app, _ = app_factory()
    async with LifespanManager(app):
        bus = app.state.bus
        response = await stream_events("s1", bus=bus)

        async def emit_event():
            await asyncio.sleep(0.01)
            await bus.publish("s1", "message_completed", {"conversation_id": "c1"})

        task = asyncio.create_task(emit_event())
        chunk = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        line = chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk
        payload = json.loads(line.replace("data:", "").strip())
        assert payload["event_type"] == "message_completed"
        assert payload["payload"]["conversation_id"] == "c1"
        await task
        await response.body_iterator.aclose()


@pytest.mark.asyncio
async def test_lifespan_closes_the_inference_client(app_factory):
    app, fake = app_factory()
    async with LifespanManager(app):
        assert fake.closed is False
    assert fake.closed is True
