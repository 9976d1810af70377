import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from .attachments import build_turn, extract_text, is_image
from .config import AppSettings, load_settings
from .db import Database
from .errors import StageFailure, TransportFailure
from .events import EventBus
from .llm import OllamaClient
from .orchestrator import Orchestrator
from .schemas import CreateConversationRequest, PostMessageRequest


TEXT_MIMES = {"text/plain", "text/markdown", "text/csv", "application/json", "application/pdf"}


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_upload_dir(request: Request) -> Path:
    return request.app.state.upload_dir


def get_max_upload_bytes(request: Request) -> int:
    return request.app.state.max_upload_bytes


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def validate_upload(file: UploadFile) -> None:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Filename required.")
    raw_name = file.filename
    safe_name = Path(raw_name).name
    if safe_name != raw_name or safe_name in (".", ".."):
        raise HTTPException(status_code=400, detail="Invalid filename.")
    if not is_image(file.content_type) and file.content_type not in TEXT_MIMES:
        raise HTTPException(status_code=400, detail="Only images, PDFs or text files are allowed.")


router = APIRouter()


@router.get("/api/models")
async def list_models(orchestrator: Orchestrator = Depends(get_orchestrator)):
    registry = orchestrator.registry
    available = []
    error = None
    try:
        available = await orchestrator.client.list_models()
    except TransportFailure as exc:
        error = str(exc)
    return {
        "models": [cap.model_dump(mode="json") for cap in registry.list()],
        "available": available,
        "error": error,
        "default_model": registry.general_model,
    }


@router.post("/api/conversations")
async def create_conversation(
    payload: Optional[CreateConversationRequest] = None,
    db: Database = Depends(get_db),
):
    return await db.create_conversation(payload.title if payload else None)


@router.get("/api/conversations")
async def list_conversations(db: Database = Depends(get_db)):
    return {"conversations": await db.list_conversations()}


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, db: Database = Depends(get_db)):
    conversation = await db.get_conversation(conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found.")
    messages = await db.list_messages(conversation_id)
    return {**conversation, "messages": messages}


@router.post("/api/uploads")
async def upload_file(
    file: UploadFile = File(...),
    conversation_id: Optional[str] = Form(None),
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    upload_dir: Path = Depends(get_upload_dir),
    max_upload_bytes: int = Depends(get_max_upload_bytes),
):
    validate_upload(file)
    data = await file.read()
    if len(data) > max_upload_bytes:
        raise HTTPException(status_code=400, detail=f"File too large (>{settings.upload_max_mb} MB).")
    safe_name = Path(file.filename).name
    stored_name = f"{uuid.uuid4().hex}_{safe_name}"
    upload_path = upload_dir / stored_name
    upload_dir.mkdir(parents=True, exist_ok=True)
    upload_path.write_bytes(data)
    mime = file.content_type or "application/octet-stream"
    extracted = None
    if not is_image(mime):
        extracted = extract_text(upload_path, mime, max_chars=settings.max_chars_per_file)
    attachment_id = await db.add_attachment(
        conversation_id,
        safe_name,
        str(upload_path),
        mime,
        len(data),
        extracted_text=extracted,
    )
    return {"id": attachment_id, "filename": safe_name, "mime": mime, "size": len(data)}


@router.post("/api/conversations/{conversation_id}/messages")
async def post_message(
    conversation_id: str,
    payload: PostMessageRequest,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    conversation = await db.get_conversation(conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found.")
    if not payload.content.strip() and not payload.attachment_ids:
        raise HTTPException(status_code=400, detail="Message content is required.")
    attachments = await db.get_attachments(payload.attachment_ids)
    found_ids = {record["id"] for record in attachments}
    missing = [aid for aid in dict.fromkeys(payload.attachment_ids) if aid not in found_ids]
    if missing:
        raise HTTPException(status_code=409, detail={"error": "Attachment not ready.", "missing": missing})
    session_id = payload.session_id or conversation_id

    history = await db.list_messages(conversation_id, limit=settings.history_limit)
    user_message = await db.add_message(
        conversation_id,
        payload.role,
        payload.content,
        attachment_ids=payload.attachment_ids,
    )
    turn = build_turn(
        history,
        payload.content,
        role=payload.role,
        attachments=attachments,
        max_files=settings.max_files_per_turn,
        max_chars=settings.max_chars_per_file,
    )

    try:
        reply = await orchestrator.respond(turn, session_id=session_id)
    except StageFailure as exc:
        partial: Dict[str, Any] = exc.partial.to_metadata() if exc.partial is not None else {}
        detail = {
            "error": str(exc),
            "step": exc.step,
            "model": exc.model,
            "attempts": exc.attempts,
            "partial": partial,
        }
        await bus.publish(session_id, "error_chat", detail)
        raise HTTPException(status_code=502, detail=detail) from exc

    metadata = reply.result.to_metadata()
    assistant_message = await db.add_message(
        conversation_id,
        "assistant",
        reply.result.final_output,
        metadata=metadata,
    )
    await bus.publish(
        session_id,
        "message_completed",
        {
            "conversation_id": conversation_id,
            "message_id": assistant_message["id"],
            "model": reply.plan.selected_model,
            "workflow": reply.plan.workflow,
            "cache_hit": reply.result.metrics.cache_hit,
        },
    )
    return {
        "user_message": user_message,
        "assistant_message": assistant_message,
        "orchestration": {
            "plan": reply.plan.model_dump(mode="json"),
            "metrics": reply.result.metrics.model_dump(mode="json"),
            "results": [res.preview() for res in reply.result.results],
        },
    }


@router.get("/events")
async def stream_global_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe_global()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe_global(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/sessions/{session_id}/events")
async def stream_events(session_id: str, bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe(session_id)
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(session_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    client: Optional[Any] = None,
    bus: Optional[EventBus] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        app.state.upload_dir.mkdir(parents=True, exist_ok=True)
        try:
            yield
        finally:
            await app.state.orchestrator.close()

    app = FastAPI(title="modelrouter", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.bus = bus or EventBus()
    client = client or OllamaClient(settings.ollama_base_url, debug=settings.debug_chat)
    app.state.orchestrator = Orchestrator(settings, client, bus=app.state.bus)
    app.state.upload_dir = Path(settings.upload_dir).resolve()
    app.state.max_upload_bytes = settings.upload_max_mb * 1024 * 1024

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("MODELROUTER_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "modelrouter.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
