import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .schemas import ConversationTurn, ImagePayload, Message


logger = logging.getLogger("uvicorn.error")

MAX_CHARS_PER_FILE = 15000
MAX_FILES_TO_ATTACH = 25
PDF_MAX_PAGES = 50
TRUNCATION_MARKER = "\n...[TRUNCATED]..."


def is_image(mime: Optional[str]) -> bool:
    return bool(mime) and str(mime).lower().startswith("image/")


def pdf_text(path: Path, max_chars: int = MAX_CHARS_PER_FILE) -> str:
    try:
        reader = PdfReader(str(path))
        parts: List[str] = []
        for page in reader.pages[:PDF_MAX_PAGES]:
            text = page.extract_text() or ""
            if text:
                parts.append(text)
            if sum(len(p) for p in parts) > max_chars:
                break
        return "\n".join(parts)
    except (OSError, PdfReadError) as exc:
        logger.warning("Could not read PDF %s: %s", path, exc)
        return ""


def extract_text(path: Path, mime: Optional[str], max_chars: int = MAX_CHARS_PER_FILE) -> Optional[str]:
    """Best-effort text for a non-image attachment; None when unreadable."""
    if (mime or "").lower() == "application/pdf" or path.suffix.lower() == ".pdf":
        return pdf_text(path, max_chars=max_chars) or None
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.warning("Could not read attachment %s: %s", path, exc)
        return None


def _snippet(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def load_image(record: Dict[str, Any]) -> Optional[ImagePayload]:
    path = Path(record.get("storage_path") or "")
    try:
        data = path.read_bytes()
    except OSError as exc:
        logger.error("Error reading image %s: %s", record.get("filename"), exc)
        return None
    logger.info("Image loaded: %s (%s bytes)", record.get("filename"), len(data))
    return ImagePayload(data=data, mime=record.get("mime") or "image/png")


def attachment_message(record: Dict[str, Any], max_chars: int) -> Message:
    name = record.get("filename") or "attachment"
    text = record.get("extracted_text")
    if not text and record.get("storage_path"):
        text = extract_text(Path(record["storage_path"]), record.get("mime"), max_chars=max_chars)
        if text is None:
            text = f"[Could not read: {name}]"
    if not text:
        text = f"[Attachment without content: {name}]"
    return Message(role="system", content=f"Attached file: {name}\n\n{_snippet(text, max_chars)}")


def build_turn(
    history: Sequence[Dict[str, Any]],
    content: str,
    role: str = "user",
    attachments: Sequence[Dict[str, Any]] = (),
    max_files: int = MAX_FILES_TO_ATTACH,
    max_chars: int = MAX_CHARS_PER_FILE,
) -> ConversationTurn:
    """Assemble attachment context, prior history and the new message into one turn."""
    attachment_messages: List[Message] = []
    images: List[ImagePayload] = []
    for record in list(attachments)[:max_files]:
        if is_image(record.get("mime")):
            payload = load_image(record)
            if payload is not None:
                images.append(payload)
        else:
            attachment_messages.append(attachment_message(record, max_chars))

    prior = [Message(role=item.get("role"), content=item.get("content") or "") for item in history]
    current = Message(role=role, content=content, images=images)
    turn = ConversationTurn(messages=[*attachment_messages, *prior, current])
    logger.info(
        "Turn built: messages=%s has_images=%s images=%s",
        len(turn.messages),
        turn.has_images,
        len(images),
    )
    return turn
