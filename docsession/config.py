from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

logger = logging.getLogger(__name__)

PROVIDER_GEMINI = "gemini"
PROVIDER_OPENAI = "openai"
FALLBACK_ALL_OR_NOTHING = "all_or_nothing"
FALLBACK_PER_KEYWORD = "per_keyword"

DEFAULT_DB_PATH = Path.cwd() / "docsession.db"


def _normalize_model_name(raw_model: Optional[str], *, default: str) -> str:
    model = raw_model or default
    if not model.startswith("openai/"):
        model = f"openai/{model}"
    return model


def _env_float(name: str, default: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        logger.warning("Ignoring invalid %s; using %s", name, default)
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    try:
        return max(1, int(os.getenv(name, str(default))))
    except ValueError:
        logger.warning("Ignoring invalid %s; using %s", name, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    db_path: Path = DEFAULT_DB_PATH
    db_timeout: float = 5.0
    search_separator: str = "|"
    search_case_sensitive: bool = False
    search_fallback_policy: str = FALLBACK_ALL_OR_NOTHING
    reveal_interval: float = 0.02
    reveal_chunk: int = 1
    ai_provider: str = PROVIDER_GEMINI
    ai_request_timeout: float = 30.0
    gemini_api_key: Optional[str] = None
    gemini_api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-1.5-flash"
    openai_api_key: Optional[str] = None
    openai_api_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "openai/gpt-4.1"


def load_settings() -> Settings:
    load_dotenv()

    provider = os.getenv("AI_PROVIDER", PROVIDER_GEMINI).strip().lower()
    if provider not in {PROVIDER_GEMINI, PROVIDER_OPENAI}:
        provider = PROVIDER_GEMINI

    policy = os.getenv("SEARCH_FALLBACK_POLICY", FALLBACK_ALL_OR_NOTHING).strip().lower()
    if policy not in {FALLBACK_ALL_OR_NOTHING, FALLBACK_PER_KEYWORD}:
        policy = FALLBACK_ALL_OR_NOTHING

    return Settings(
        db_path=Path(os.getenv("DOCSESSION_DB_PATH") or DEFAULT_DB_PATH),
        db_timeout=_env_float("DOCSESSION_DB_TIMEOUT", 5.0),
        search_separator=os.getenv("SEARCH_SEPARATOR") or "|",
        search_case_sensitive=_env_bool("SEARCH_CASE_SENSITIVE", False),
        search_fallback_policy=policy,
        reveal_interval=_env_float("REVEAL_INTERVAL", 0.02),
        reveal_chunk=_env_int("REVEAL_CHUNK", 1),
        ai_provider=provider,
        ai_request_timeout=_env_float("AI_REQUEST_TIMEOUT", 30.0),
        gemini_api_key=os.getenv("GEMINI_API_KEY"),
        gemini_api_base_url=os.getenv("GEMINI_API_BASE_URL")
        or "https://generativelanguage.googleapis.com/v1beta",
        gemini_model=os.getenv("GEMINI_MODEL") or "gemini-1.5-flash",
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        openai_api_base_url=os.getenv("OPENAI_API_BASE_URL") or "https://api.openai.com/v1",
        openai_model=_normalize_model_name(os.getenv("OPENAI_MODEL"), default="gpt-4.1"),
    )
