"""
Language model client (Azure OpenAI chat completions REST API).
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from logging_setup import get_logger, Component
from .config import AzureOpenAISettings
from .errors import GenerationError
from .http_pool import PooledHTTPClient
from .instructions import Scenario

logger = get_logger(Component.LLM)


@dataclass(frozen=True)
class Completion:
    text: str
    usage: Optional[Dict[str, Any]] = None


class AzureOpenAIClient(PooledHTTPClient):
    """generate(user_message, context, prompt) -> Completion."""

    def __init__(
        self,
        settings: AzureOpenAISettings,
        scenario: Scenario,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__(http_session)
        self._settings = settings
        self._scenario = scenario
        self._timeout_s = settings.timeout_s
        self._logger = logger

    def build_messages(self, user_message: str, context: str = "", prompt: Optional[str] = None):
        return [
            {"role": "system", "content": self._scenario.build_system_prompt(context, prompt)},
            {"role": "user", "content": user_message},
        ]

    async def generate(self, user_message: str, context: str = "", prompt: Optional[str] = None) -> Completion:
        if not self._settings.api_key or not self._settings.endpoint:
            raise GenerationError("Azure OpenAI is not configured (api key / endpoint missing)")

        body = {
            "messages": self.build_messages(user_message, context, prompt),
            "temperature": self._settings.temperature,
            "top_p": 1,
            "frequency_penalty": 0,
            "presence_penalty": 0,
            "max_tokens": self._settings.max_tokens,
        }
        start_ts = time.time()
        session = self._get_or_create_session()

        try:
            async with session.post(
                self._settings.completions_url,
                json=body,
                headers={"api-key": self._settings.api_key},
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error("Completion request failed", status_code=response.status, error_text=error_text[:300])
                    raise GenerationError(f"Azure OpenAI API error: {response.status}", status=response.status)
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Completion request exception", error=str(e), error_type=type(e).__name__)
            raise GenerationError(f"Azure OpenAI request failed: {e}") from e
        except ValueError as e:
            # Undecodable or non-JSON body on a 200
            logger.error("Completion response unreadable", error=str(e), error_type=type(e).__name__)
            raise GenerationError(f"Azure OpenAI returned an invalid body: {e}") from e

        choices = data.get("choices") or []
        if not choices:
            raise GenerationError("No response from Azure OpenAI")
        text = ((choices[0].get("message") or {}).get("content") or "").strip()

        logger.info(
            "Completion received",
            deployment=self._settings.deployment,
            context_length=len(context or ""),
            prompt_override=prompt is not None,
            response_length=len(text),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return Completion(text=text, usage=data.get("usage"))
