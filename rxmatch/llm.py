"""LLM client wrapper for the interpretation oracle: OpenAI, Groq (free tier), or Ollama (local, free)."""
import json
import os

import openai
from openai import OpenAI

from rxmatch.config import Settings, get_settings
from rxmatch.errors import OracleConfigurationError, OracleRefusal

# Provider: openai (default), groq (free tier), ollama (local, free)
GROQ_BASE = "https://api.groq.com/openai/v1"
OLLAMA_BASE = "http://localhost:11434/v1"


def get_client(settings: Settings | None = None) -> OpenAI:
    """Return OpenAI-compatible client based on LLM_PROVIDER."""
    settings = settings or get_settings()
    provider = settings.llm_provider
    timeout = settings.timeout_interpretation

    if provider == "groq":
        key = os.getenv("GROQ_API_KEY")
        if not key or key.startswith("gsk_REPLACE"):
            raise OracleConfigurationError(
                "Groq API key not set. Set LLM_PROVIDER=groq and GROQ_API_KEY=your-key in .env."
            )
        return OpenAI(api_key=key, base_url=GROQ_BASE, timeout=timeout, max_retries=0)

    if provider == "ollama":
        # Ollama has no auth; the key is a placeholder
        return OpenAI(api_key="ollama", base_url=OLLAMA_BASE, timeout=timeout, max_retries=0)

    key = os.getenv("OPENAI_API_KEY")
    if not key or key.startswith("sk-REPLACE"):
        raise OracleConfigurationError(
            "OpenAI API key not set. Create .env and set OPENAI_API_KEY=your-key, "
            "or use LLM_PROVIDER=groq / LLM_PROVIDER=ollama."
        )
    return OpenAI(api_key=key, timeout=timeout, max_retries=0)


def get_model(settings: Settings | None = None) -> str:
    """Return model name for the current provider."""
    settings = settings or get_settings()
    if settings.llm_provider == "groq":
        return settings.groq_model
    if settings.llm_provider == "ollama":
        return settings.ollama_model
    return settings.openai_model


def complete(system: str, user: str, model: str | None = None, settings: Settings | None = None) -> str:
    """
    Single JSON-mode completion. Returns the assistant message content.
    Raises OracleRefusal when the model declines, openai.APIError on transport failures.
    """
    settings = settings or get_settings()
    client = get_client(settings)
    model = model or get_model(settings)
    resp = client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        response_format={"type": "json_object"},
    )
    msg = resp.choices[0].message
    refusal = getattr(msg, "refusal", None)
    if refusal:
        raise OracleRefusal(refusal)
    if not msg.content:
        raise OracleRefusal("empty completion")
    return msg.content


def extract_json_from_response(text: str) -> dict:
    """
    Try to find a JSON object in the response (between ```json ... ``` or raw).
    Returns the parsed dict or raises ValueError.
    """
    text = text.strip()
    if "```json" in text:
        start = text.index("```json") + 7
        end = text.index("```", start)
        text = text[start:end].strip()
    elif "```" in text:
        start = text.index("```") + 3
        end = text.index("```", start)
        text = text[start:end].strip()
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


# Setup and transport failures the interpretation client treats as a hard failure of the call.
ORACLE_ERRORS = (
    OracleConfigurationError,
    openai.APIError,
    openai.APITimeoutError,
    openai.APIConnectionError,
)
