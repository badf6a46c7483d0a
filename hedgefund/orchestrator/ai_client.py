"""AI Client — thin wrapper over the Anthropic API.

Tracks token usage against an in-memory daily budget and retries transient
failures with exponential backoff.
"""

from __future__ import annotations

import asyncio
from datetime import date
from typing import Any

import structlog

from hedgefund.errors import AdvisoryError
from hedgefund.shell.config import AIConfig

log = structlog.get_logger()

# Cost per million tokens (approximate, as of 2025)
MODEL_COSTS = {
    "claude-opus-4-6": {"input": 15.0, "output": 75.0},
    "claude-sonnet-4-5-20250929": {"input": 3.0, "output": 15.0},
}

TRANSIENT_MARKERS = ("timeout", "rate", "429", "500", "502", "503", "529", "overloaded", "connection")
MAX_RETRIES = 3


def is_transient(error: Exception) -> bool:
    error_str = str(error).lower()
    return any(k in error_str for k in TRANSIENT_MARKERS)


class AIClient:
    """Anthropic client with a daily token budget."""

    def __init__(self, config: AIConfig, client: Any = None) -> None:
        self._config = config
        self._client = client
        self._daily_tokens_used: int = 0
        self._usage_date: date = date.today()
        self._total_cost: float = 0.0

    def initialize(self) -> None:
        """Create the API client unless one was injected."""
        if self._client is not None:
            return
        from anthropic import AsyncAnthropic
        self._client = AsyncAnthropic(
            api_key=self._config.anthropic_api_key,
            timeout=self._config.request_timeout_s,
        )
        log.info("ai.initialized", provider="anthropic", model=self._config.model)

    @property
    def tokens_used_today(self) -> int:
        self._roll_day()
        return self._daily_tokens_used

    @property
    def tokens_remaining(self) -> int:
        return max(0, self._config.daily_token_limit - self.tokens_used_today)

    def reset_daily_tokens(self) -> None:
        self._daily_tokens_used = 0
        self._usage_date = date.today()

    def _roll_day(self) -> None:
        if date.today() != self._usage_date:
            log.info("ai.daily_reset", used=self._daily_tokens_used)
            self.reset_daily_tokens()

    async def ask(
        self,
        prompt: str,
        system: str = "",
        max_tokens: int | None = None,
        temperature: float = 0.3,
        purpose: str = "",
    ) -> str:
        """Send a message to Claude and return the response text.

        Args:
            prompt: The user message
            system: System prompt
            max_tokens: Max response tokens (defaults to config)
            temperature: Creativity (0=deterministic, 1=creative)
            purpose: Description for usage logging
        """
        if self._client is None:
            raise RuntimeError("AI client not initialized — call initialize() first")

        if self.tokens_used_today >= self._config.daily_token_limit:
            log.warning("ai.daily_limit_reached", used=self._daily_tokens_used,
                        limit=self._config.daily_token_limit)
            raise AdvisoryError("Daily token limit reached")

        model = self._config.model
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens or self._config.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system

        # Retry with exponential backoff for transient errors
        for attempt in range(MAX_RETRIES):
            try:
                response = await self._client.messages.create(**kwargs)
                break
            except Exception as e:
                if not is_transient(e) or attempt == MAX_RETRIES - 1:
                    raise
                wait = 2 ** attempt  # 1s, 2s
                log.warning("ai.retry", attempt=attempt + 1, error=str(e), wait=wait)
                await asyncio.sleep(wait)

        text = "".join(block.text for block in response.content if hasattr(block, "text"))

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        self._daily_tokens_used += input_tokens + output_tokens

        costs = MODEL_COSTS.get(model, {"input": 3.0, "output": 15.0})
        cost = (input_tokens * costs["input"] + output_tokens * costs["output"]) / 1_000_000
        self._total_cost += cost

        log.info("ai.response", model=model, input_tokens=input_tokens,
                 output_tokens=output_tokens, cost=f"${cost:.4f}", purpose=purpose)
        return text

    def get_daily_usage(self) -> dict:
        return {
            "model": self._config.model,
            "used": self.tokens_used_today,
            "daily_limit": self._config.daily_token_limit,
            "total_cost": round(self._total_cost, 4),
        }
