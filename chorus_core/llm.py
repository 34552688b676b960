import asyncio
import logging
import os
import random
from typing import Dict, List, Optional

from openai import AsyncOpenAI

from .config import RuntimeConfig
from .safety import CircuitBreaker

_logger = logging.getLogger("chorus.llm")

# Rarity-weighted catalog used when an agent has no model assigned yet.
MODEL_CATALOG: List[Dict[str, str]] = [
    {"model": "meta-llama/llama-3.2-1b-instruct", "rarity": "common"},
    {"model": "meta-llama/llama-3.2-3b-instruct", "rarity": "common"},
    {"model": "google/gemini-flash-1.5-8b", "rarity": "common"},
    {"model": "gryphe/mythomax-l2-13b", "rarity": "common"},
    {"model": "meta-llama/llama-3.1-70b-instruct", "rarity": "uncommon"},
    {"model": "nvidia/llama-3.1-nemotron-70b-instruct", "rarity": "uncommon"},
    {"model": "pygmalionai/mythalion-13b", "rarity": "uncommon"},
    {"model": "eva-unit-01/eva-qwen-2.5-72b", "rarity": "rare"},
    {"model": "qwen/qwq-32b-preview", "rarity": "rare"},
    {"model": "neversleep/llama-3.1-lumimaid-70b", "rarity": "rare"},
    {"model": "openai/gpt-4o", "rarity": "legendary"},
    {"model": "meta-llama/llama-3.1-405b-instruct", "rarity": "legendary"},
    {"model": "anthropic/claude-3.5-sonnet:beta", "rarity": "legendary"},
]

RARITY_WEIGHTS = {"common": 0.6, "uncommon": 0.25, "rare": 0.1, "legendary": 0.05}


class CompletionUnavailable(RuntimeError):
    pass


def select_model(
    rng: random.Random | None = None,
    catalog: List[Dict[str, str]] | None = None,
    fallback: str = "meta-llama/llama-3.2-3b-instruct",
) -> str:
    rng = rng or random.Random()
    catalog = MODEL_CATALOG if catalog is None else catalog
    roll = rng.random()
    accumulated = 0.0
    selected = "common"
    for rarity, weight in RARITY_WEIGHTS.items():
        accumulated += weight
        if roll <= accumulated:
            selected = rarity
            break
    available = [entry["model"] for entry in catalog if entry.get("rarity") == selected]
    if not available:
        return fallback
    return rng.choice(available)


class CompletionService:
    """
    Chat-completion client for any OpenAI-compatible endpoint. Every call is
    bounded by a timeout and guarded by a circuit breaker; failures raise so
    the caller can decide how to fail closed.
    """

    def __init__(self, config: RuntimeConfig, api_key: str | None = None, client: AsyncOpenAI | None = None):
        self.config = config
        self._api_key = api_key
        self._client = client
        self.breaker = CircuitBreaker("llm", threshold=3, window_seconds=90.0, cooldown_seconds=300.0)

    def _client_lazy(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = self._api_key or os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise CompletionUnavailable("OPENROUTER_API_KEY is required for completion access.")
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.config.llm_base_url,
                timeout=self.config.llm_http_timeout_seconds,
                max_retries=self.config.llm_max_retries,
            )
        return self._client

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model_hint: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        if not self.breaker.allow():
            raise CompletionUnavailable(f"completion breaker open: {self.breaker.reason}")
        client = self._client_lazy()
        kwargs = {"model": model_hint or self.config.llm_default_model, "messages": messages}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        try:
            completion = await asyncio.wait_for(
                client.chat.completions.create(**kwargs),
                timeout=self.config.completion_timeout_seconds,
            )
        except Exception as exc:
            self.breaker.record_failure(f"{type(exc).__name__}: {exc}")
            _logger.warning("Completion failed (model=%s); breaker count %d", kwargs["model"], len(self.breaker.failures))
            raise
        self.breaker.record_success()
        if not completion.choices:
            return ""
        content = completion.choices[0].message.content
        return content.strip() if content else ""

    def breaker_status(self) -> tuple[bool, str]:
        return self.breaker.status()
