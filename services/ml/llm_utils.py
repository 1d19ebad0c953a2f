"""
Shared helpers for working with the text-generation oracle.

Environment variables:
    USE_SDK_ORACLE / USE_NEUROLINK → route every call through the multi-provider SDK client
    ORACLE_SDK_BASE_URL            → OpenAI-compatible base URL for the SDK client
    ORACLE_SDK_API_KEY             → SDK key (falls back to OPENAI_API_KEY)
    RECOMMENDATIONS_API_KEY        → dedicated key for the direct chat-completions API
    GRID_AI_API_KEY                → shared gateway key
    ORACLE_DIRECT_URL / ORACLE_GATEWAY_URL → endpoint overrides
    ORACLE_RANKING_MODEL           → model for ranking prompts
    ORACLE_ANALYSIS_MODEL          → model for tagging and tag-graph prompts
    ORACLE_TEMPERATURE / ORACLE_TIMEOUT_S

Backend priority is SDK flag > dedicated API key > gateway key. Resolution is a pure
function over the loaded settings so it can run once at startup and be tested directly.

Oracle output is untyped text. ``decode_json_object`` / ``decode_json_array`` turn it
into a tagged result (``Parsed`` or ``Malformed``) so callers branch on the tag instead
of catching parse exceptions.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional, Union

from services.exceptions import OracleConfigurationError
from settings import env_bool, env_float, env_int

logger = logging.getLogger(__name__)

GRID_AI_URL = "https://grid.ai.juspay.net/v1/chat/completions"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/chat/completions"


class OracleBackend(str, enum.Enum):
    SDK = "sdk"
    DIRECT = "direct"
    GATEWAY = "gateway"


@dataclass(frozen=True)
class OracleSettings:
    """Resolved configuration for all oracle touchpoints."""

    use_sdk: bool
    sdk_api_key: str
    sdk_base_url: Optional[str]
    direct_api_key: str
    direct_url: str
    gateway_api_key: str
    gateway_url: str
    ranking_model: str
    analysis_model: str
    temperature: float
    timeout_s: float
    ranking_max_tokens: int
    analysis_max_tokens: int
    tag_graph_max_tokens: int


@lru_cache(maxsize=1)
def load_settings() -> OracleSettings:
    """Load and cache oracle configuration from environment variables."""

    use_sdk = env_bool("USE_SDK_ORACLE") or env_bool("USE_NEUROLINK")

    return OracleSettings(
        use_sdk=use_sdk,
        sdk_api_key=(os.getenv("ORACLE_SDK_API_KEY") or os.getenv("OPENAI_API_KEY") or "").strip(),
        sdk_base_url=os.getenv("ORACLE_SDK_BASE_URL") or None,
        direct_api_key=(os.getenv("RECOMMENDATIONS_API_KEY") or "").strip(),
        direct_url=os.getenv("ORACLE_DIRECT_URL", GEMINI_URL),
        gateway_api_key=(os.getenv("GRID_AI_API_KEY") or "").strip(),
        gateway_url=os.getenv("ORACLE_GATEWAY_URL", GRID_AI_URL),
        ranking_model=os.getenv("ORACLE_RANKING_MODEL", "gemini-2.5-flash-lite"),
        analysis_model=os.getenv("ORACLE_ANALYSIS_MODEL", "gemini-2.5-flash"),
        temperature=env_float("ORACLE_TEMPERATURE", 0.3),
        timeout_s=env_float("ORACLE_TIMEOUT_S", 60.0),
        ranking_max_tokens=env_int("ORACLE_RANKING_MAX_TOKENS", 1000),
        analysis_max_tokens=env_int("ORACLE_ANALYSIS_MAX_TOKENS", 16000),
        tag_graph_max_tokens=env_int("ORACLE_TAG_GRAPH_MAX_TOKENS", 50000),
    )


def resolve_oracle_backend(settings: OracleSettings) -> OracleBackend:
    """Pick the oracle backend: SDK flag > dedicated API key > gateway key."""

    if settings.use_sdk:
        return OracleBackend.SDK
    if settings.direct_api_key:
        return OracleBackend.DIRECT
    if settings.gateway_api_key:
        return OracleBackend.GATEWAY
    raise OracleConfigurationError(
        "No oracle configured: set USE_SDK_ORACLE=true, RECOMMENDATIONS_API_KEY, or GRID_AI_API_KEY"
    )


# ---------------------------------------------------------------------------
# Response decoding
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Parsed:
    data: Any


@dataclass(frozen=True)
class Malformed:
    reason: str
    raw: str = ""


DecodeResult = Union[Parsed, Malformed]

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?```\s*$")
_OBJECT_START = re.compile(r"\{")
_ARRAY_START = re.compile(r"\[")
_decoder = json.JSONDecoder()


def strip_code_fences(raw: str) -> str:
    text = raw.strip()
    text = _FENCE_OPEN.sub("", text)
    text = _FENCE_CLOSE.sub("", text)
    return text.strip()


def _decode(raw: Optional[str], start: re.Pattern, expected: type, label: str) -> DecodeResult:
    if raw is None or not str(raw).strip():
        return Malformed("empty response")

    text = strip_code_fences(str(raw))
    last_error = f"no JSON {label} found"
    # First balanced block of the expected type wins; surrounding prose is ignored
    for match in start.finditer(text):
        try:
            data, _end = _decoder.raw_decode(text, match.start())
        except json.JSONDecodeError as exc:
            last_error = f"invalid JSON {label}: {exc}"
            continue
        if isinstance(data, expected):
            return Parsed(data)
        last_error = f"expected JSON {label}, got {type(data).__name__}"

    return Malformed(last_error, raw=text[:500])


def decode_json_object(raw: Optional[str]) -> DecodeResult:
    """Strip markdown fences and parse the first balanced ``{...}`` block."""
    return _decode(raw, _OBJECT_START, dict, "object")


def decode_json_array(raw: Optional[str]) -> DecodeResult:
    """Strip markdown fences and parse the first balanced ``[...]`` block."""
    return _decode(raw, _ARRAY_START, list, "array")


def coerce_product_id(value: Any) -> Optional[int]:
    """Normalize an external product id to ``int``; returns None when it is not an integer."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        text = value.strip()
        if re.fullmatch(r"-?\d+", text):
            return int(text)
        if re.fullmatch(r"-?\d+\.0+", text):
            return int(text.split(".", 1)[0])
    return None
