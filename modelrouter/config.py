import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

from .capabilities import GENERAL_MODEL

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "MODELROUTER_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

logger = logging.getLogger("uvicorn.error")


class AppSettings(BaseModel):
    ollama_base_url: str = "http://127.0.0.1:11434"
    default_model: str = GENERAL_MODEL

    # Executor / runner
    max_attempts: int = 2
    retry_backoff_s: float = 1.0
    max_concurrent_calls: Optional[int] = None
    admission_timeout_s: float = 120.0
    parallel_verify: bool = False
    stream_responses: bool = False
    debug_chat: bool = False

    # Response cache
    cache_ttl_s: float = 3600.0
    cache_max_size: int = 100

    # Turn assembly
    history_limit: int = 30
    max_files_per_turn: int = 25
    max_chars_per_file: int = 15000

    database_path: str = "modelrouter.db"
    upload_dir: str = "uploads"
    upload_max_mb: int = 15
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = {"protected_namespaces": ()}


_INT_FIELDS = ("max_attempts", "max_concurrent_calls", "cache_max_size", "history_limit", "max_files_per_turn",
               "max_chars_per_file", "upload_max_mb", "port")
_FLOAT_FIELDS = ("retry_backoff_s", "admission_timeout_s", "cache_ttl_s")
_BOOL_FIELDS = ("parallel_verify", "stream_responses", "debug_chat")


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "ollama_base_url": os.getenv("OLLAMA_URL"),
        "default_model": os.getenv("OLLAMA_MODEL"),
        "max_attempts": os.getenv("MAX_ATTEMPTS"),
        "retry_backoff_s": os.getenv("RETRY_BACKOFF_S"),
        "max_concurrent_calls": os.getenv("MAX_CONCURRENT_CALLS"),
        "admission_timeout_s": os.getenv("ADMISSION_TIMEOUT_S"),
        "parallel_verify": os.getenv("PARALLEL_VERIFY"),
        "stream_responses": os.getenv("STREAM_RESPONSES"),
        "debug_chat": os.getenv("DEBUG_CHAT"),
        "cache_ttl_s": os.getenv("CACHE_TTL_S"),
        "cache_max_size": os.getenv("CACHE_MAX_SIZE"),
        "history_limit": os.getenv("HISTORY_LIMIT"),
        "max_files_per_turn": os.getenv("MAX_FILES_PER_TURN"),
        "max_chars_per_file": os.getenv("MAX_CHARS_PER_FILE"),
        "database_path": os.getenv("DATABASE_PATH"),
        "upload_dir": os.getenv("UPLOAD_DIR"),
        "upload_max_mb": os.getenv("UPLOAD_MAX_MB"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_FIELDS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_FIELDS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in _BOOL_FIELDS:
        if key in cleaned:
            cleaned[key] = str(cleaned[key]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable config %s: %s", path, exc)
            file_data = {}
        if not isinstance(file_data, dict):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
