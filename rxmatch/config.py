"""
Central configuration.

Values come from the environment, with a .env file at the project root loaded first
(real environment variables win). Everything else in rxmatch receives a Settings
instance instead of reading os.environ directly.
"""
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")


def _env_str(key: str, default: str) -> str:
    return (os.getenv(key) or default).strip()


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    return int(value) if value else default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    return float(value) if value else default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    # interpretation oracle
    llm_provider: str = "openai"
    openai_model: str = "gpt-4o-mini"
    groq_model: str = "llama-3.1-8b-instant"
    ollama_model: str = "llama3.2"
    temperature: float = 0.2
    max_tokens: int = 1000

    # cache tiers
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 0.25
    cache_enabled: bool = True
    l1_max_size: int = 1000
    l1_ttl: float = 300.0
    ttl_interpretation: int = 604800
    ttl_standardization: int = 2592000
    ttl_catalog: int = 21600

    # external registries
    rxnorm_base_url: str = "https://rxnav.nlm.nih.gov/REST"
    fda_ndc_url: str = "https://api.fda.gov/drug/ndc.json"

    # per-call timeouts (seconds)
    timeout_interpretation: float = 30.0
    timeout_standardization: float = 5.0
    timeout_catalog: float = 10.0

    # audit
    audit_retry_attempts: int = 3
    audit_retry_delay: float = 1.0


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    return Settings(
        llm_provider=_env_str("LLM_PROVIDER", "openai").lower(),
        openai_model=_env_str("OPENAI_MODEL", "gpt-4o-mini"),
        groq_model=_env_str("GROQ_MODEL", "llama-3.1-8b-instant"),
        ollama_model=_env_str("OLLAMA_MODEL", "llama3.2"),
        temperature=_env_float("OPENAI_TEMPERATURE", 0.2),
        max_tokens=_env_int("OPENAI_MAX_TOKENS", 1000),
        redis_url=_env_str("REDIS_URL", "redis://localhost:6379/0"),
        redis_socket_timeout=_env_float("REDIS_SOCKET_TIMEOUT", 0.25),
        cache_enabled=_env_bool("FEATURE_CACHE_ENABLED", True),
        l1_max_size=_env_int("CACHE_L1_MAX_SIZE", 1000),
        l1_ttl=_env_float("CACHE_L1_TTL", 300.0),
        ttl_interpretation=_env_int("CACHE_TTL_INTERPRETATION", 604800),
        ttl_standardization=_env_int("CACHE_TTL_STANDARDIZATION", 2592000),
        ttl_catalog=_env_int("CACHE_TTL_CATALOG", 21600),
        rxnorm_base_url=_env_str("RXNORM_API_BASE", "https://rxnav.nlm.nih.gov/REST"),
        fda_ndc_url=_env_str("FDA_NDC_API_BASE", "https://api.fda.gov/drug/ndc.json"),
        timeout_interpretation=_env_float("TIMEOUT_INTERPRETATION", 30.0),
        timeout_standardization=_env_float("TIMEOUT_STANDARDIZATION", 5.0),
        timeout_catalog=_env_float("TIMEOUT_CATALOG", 10.0),
        audit_retry_attempts=_env_int("AUDIT_RETRY_ATTEMPTS", 3),
        audit_retry_delay=_env_float("AUDIT_RETRY_DELAY", 1.0),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return load_settings()
