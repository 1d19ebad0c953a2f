"""
Ranking oracle backends.

Every backend takes a prompt and returns raw text. Network errors, non-2xx
responses and empty completions all surface as ``OracleError``; callers decide
how to degrade. No backend retries.
"""
from __future__ import annotations

import abc
import logging
import time
from typing import Any, Dict, List, Optional

import httpx
from openai import AsyncOpenAI

from services.exceptions import OracleConfigurationError, OracleError
from services.ml.llm_utils import OracleBackend, OracleSettings, resolve_oracle_backend

logger = logging.getLogger(__name__)

TASK_RANKING = "ranking"
TASK_ANALYSIS = "analysis"
TASK_TAG_GRAPH = "tag_graph"


class RankingOracle(abc.ABC):
    """Text-in, text-out capability used for ranking, tagging and tag-graph prompts."""

    name = "oracle"

    def __init__(self, settings: OracleSettings) -> None:
        self.settings = settings

    def _model_for(self, task: str) -> str:
        if task == TASK_RANKING:
            return self.settings.ranking_model
        return self.settings.analysis_model

    def _max_tokens_for(self, task: str) -> int:
        if task == TASK_RANKING:
            return self.settings.ranking_max_tokens
        if task == TASK_TAG_GRAPH:
            return self.settings.tag_graph_max_tokens
        return self.settings.analysis_max_tokens

    @staticmethod
    def _messages(prompt: str, system: Optional[str]) -> List[Dict[str, str]]:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return messages

    @abc.abstractmethod
    async def complete(self, prompt: str, *, system: Optional[str] = None, task: str = TASK_RANKING) -> str:
        """Return the oracle's raw text answer or raise OracleError."""

    async def close(self) -> None:
        return None


class ChatCompletionsHTTPOracle(RankingOracle):
    """Plain HTTP call against an OpenAI-compatible /chat/completions endpoint."""

    def __init__(
        self,
        settings: OracleSettings,
        *,
        url: str,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(settings)
        self.url = url
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=settings.timeout_s)

    async def complete(self, prompt: str, *, system: Optional[str] = None, task: str = TASK_RANKING) -> str:
        payload: Dict[str, Any] = {
            "model": self._model_for(task),
            "messages": self._messages(prompt, system),
            "temperature": self.settings.temperature,
            "max_tokens": self._max_tokens_for(task),
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        start = time.time()
        try:
            response = await self._client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise OracleError(f"{self.name} request failed: {exc}") from exc

        if response.status_code >= 400:
            body = response.text[:500]
            logger.error("%s API error (%s): %s", self.name, response.status_code, body)
            raise OracleError(f"{self.name} error: {response.status_code} - {body}")

        try:
            data = response.json()
        except ValueError as exc:
            raise OracleError(f"{self.name} returned a non-JSON body") from exc

        choices = data.get("choices") or []
        content = ""
        if choices:
            content = ((choices[0] or {}).get("message") or {}).get("content") or ""
        if not content.strip():
            raise OracleError(f"{self.name} returned an empty completion")

        logger.debug(
            "%s %s call finished in %dms (%d chars)",
            self.name, task, int((time.time() - start) * 1000), len(content),
        )
        return content

    async def close(self) -> None:
        await self._client.aclose()


class DirectAPIOracle(ChatCompletionsHTTPOracle):
    """Dedicated recommendations key against the provider's chat endpoint."""

    name = "direct-api"

    def __init__(self, settings: OracleSettings, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(settings, url=settings.direct_url, api_key=settings.direct_api_key, client=client)


class GatewayAPIOracle(ChatCompletionsHTTPOracle):
    """Shared gateway key against the internal gateway endpoint."""

    name = "gateway-api"

    def __init__(self, settings: OracleSettings, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(settings, url=settings.gateway_url, api_key=settings.gateway_api_key, client=client)


class MultiProviderSDKOracle(RankingOracle):
    """SDK-mediated call; the provider behind the OpenAI-compatible base URL is opaque."""

    name = "multi-provider-sdk"

    def __init__(self, settings: OracleSettings, client: Optional[AsyncOpenAI] = None) -> None:
        super().__init__(settings)
        self.client = client or AsyncOpenAI(
            api_key=settings.sdk_api_key or None,
            base_url=settings.sdk_base_url,
            timeout=settings.timeout_s,
            max_retries=0,
        )

    async def complete(self, prompt: str, *, system: Optional[str] = None, task: str = TASK_RANKING) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self._model_for(task),
                messages=self._messages(prompt, system),
                max_tokens=self._max_tokens_for(task),
                temperature=self.settings.temperature,
            )
        except Exception as exc:
            raise OracleError(f"{self.name} call failed: {exc}") from exc

        if not response.choices:
            raise OracleError(f"{self.name} returned no choices")
        content = response.choices[0].message.content or ""
        if not content.strip():
            raise OracleError(f"{self.name} returned an empty completion")
        return content

    async def close(self) -> None:
        await self.client.close()


class UnavailableOracle(RankingOracle):
    """Stand-in when no backend is configured; every call fails so callers take their fallback."""

    name = "unavailable"

    def __init__(self, settings: OracleSettings, reason: str) -> None:
        super().__init__(settings)
        self.reason = reason

    async def complete(self, prompt: str, *, system: Optional[str] = None, task: str = TASK_RANKING) -> str:
        raise OracleError(self.reason)


def build_oracle(settings: OracleSettings) -> RankingOracle:
    """Instantiate the configured backend once at startup."""

    backend = resolve_oracle_backend(settings)
    if backend is OracleBackend.SDK:
        oracle: RankingOracle = MultiProviderSDKOracle(settings)
    elif backend is OracleBackend.DIRECT:
        oracle = DirectAPIOracle(settings)
    else:
        oracle = GatewayAPIOracle(settings)
    logger.info("Ranking oracle backend: %s", oracle.name)
    return oracle


def build_oracle_or_unavailable(settings: OracleSettings) -> RankingOracle:
    try:
        return build_oracle(settings)
    except OracleConfigurationError as exc:
        logger.error("Oracle configuration error: %s; all oracle calls will fall back", exc)
        return UnavailableOracle(settings, str(exc))
