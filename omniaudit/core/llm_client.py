"""LLM client: unified async interface over Anthropic and OpenAI-compatible APIs.

Model ids starting with ``claude`` are sent to Anthropic; every other id goes
to the OpenAI-compatible endpoint configured by ``ai_base_url`` (OpenRouter by
default), which fronts the open models used by the ensemble.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import anthropic
import openai

from omniaudit.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


def is_anthropic_model(model: str) -> bool:
    return model.startswith("claude") or model.startswith("anthropic/claude")


class LLMClient:
    """Async client used by the AI ensemble.

    Features:
    - Routing per model id (Anthropic or OpenAI-compatible)
    - Exponential backoff retries on rate limits / transient errors
    - Token usage tracking
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._anthropic: anthropic.AsyncAnthropic | None = None
        self._openai: openai.AsyncOpenAI | None = None
        self._max_retries = max(1, self._settings.ai_max_retries)
        self._retry_base_delay = self._settings.ai_retry_base_delay
        self._total_input_tokens = 0
        self._total_output_tokens = 0

    @property
    def token_usage(self) -> dict[str, int]:
        return {
            "input_tokens": self._total_input_tokens,
            "output_tokens": self._total_output_tokens,
        }

    async def complete(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4000,
        temperature: float = 0.1,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send one prompt to ``model`` and return its parsed JSON reply."""
        if is_anthropic_model(model):
            return await self._retry(
                self._call_claude, model.removeprefix("anthropic/"), system_prompt,
                user_prompt, temperature, max_tokens, timeout,
            )
        return await self._retry(
            self._call_openai, model, system_prompt, user_prompt,
            temperature, max_tokens, timeout,
        )

    # ── Private ──────────────────────────────────────────────────────

    def _anthropic_client(self) -> anthropic.AsyncAnthropic:
        if self._anthropic is None:
            self._anthropic = anthropic.AsyncAnthropic(api_key=self._settings.anthropic_api_key)
        return self._anthropic

    def _openai_client(self) -> openai.AsyncOpenAI:
        if self._openai is None:
            self._openai = openai.AsyncOpenAI(
                api_key=self._settings.openrouter_api_key,
                base_url=self._settings.ai_base_url,
            )
        return self._openai

    async def _retry(self, fn, *args, **kwargs) -> dict[str, Any]:
        """Retry a function with exponential backoff."""
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                return await fn(*args, **kwargs)
            except _RETRYABLE_ERRORS as e:
                last_error = e
                if attempt == self._max_retries - 1:
                    break
                delay = self._retry_base_delay * (2 ** attempt)
                logger.info("Retry %d/%d after %.1fs: %s", attempt + 1, self._max_retries, delay, e)
                await asyncio.sleep(delay)
        raise last_error  # type: ignore[misc]

    async def _call_claude(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
        timeout: float | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        message = await self._anthropic_client().messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
            **kwargs,
        )
        self._total_input_tokens += message.usage.input_tokens
        self._total_output_tokens += message.usage.output_tokens
        content = message.content[0].text
        return self._parse_json_response(content)

    async def _call_openai(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
        timeout: float | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if timeout is not None:
            kwargs["timeout"] = timeout

        response = await self._openai_client().chat.completions.create(**kwargs)
        usage = response.usage
        if usage:
            self._total_input_tokens += usage.prompt_tokens
            self._total_output_tokens += usage.completion_tokens
        content = response.choices[0].message.content or "{}"
        return self._parse_json_response(content)

    def _parse_json_response(self, content: str) -> dict[str, Any]:
        """Extract JSON from LLM response, handling markdown code blocks."""
        content = content.strip()

        # Handle ```json ... ``` blocks
        if content.startswith("```"):
            lines = content.split("\n")
            json_lines: list[str] = []
            in_block = False
            for line in lines:
                if line.startswith("```") and not in_block:
                    in_block = True
                    continue
                elif line.startswith("```") and in_block:
                    break
                elif in_block:
                    json_lines.append(line)
            content = "\n".join(json_lines)

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            # Try to find JSON object in text
            start = content.find("{")
            end = content.rfind("}") + 1
            if start >= 0 and end > start:
                try:
                    parsed = json.loads(content[start:end])
                except json.JSONDecodeError:
                    return {"raw_response": content, "parse_error": True}
            else:
                return {"raw_response": content, "parse_error": True}
        if not isinstance(parsed, dict):
            return {"raw_response": content, "parse_error": True}
        return parsed
