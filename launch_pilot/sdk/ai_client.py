"""
Metered AI completion client.

Wraps an OpenAI-compatible chat completions endpoint (OpenRouter or Groq),
picks the model for the user's tier, checks the token budget before the
call and debits the ledger after a successful one.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from openai import APIStatusError, OpenAI, OpenAIError

from ..config.loader import PROVIDER_KEY_ENV, AIConfig, LimitsConfig
from ..core.guardrails import check_token_budget
from ..core.tiers import FREE_MODEL, PREMIUM_MODEL, Tier, model_for_tier, resolve_tier
from ..core.token_counter import TokenUsage, count_messages_tokens, count_tokens
from ..storage.repository import LedgerRepository

logger = logging.getLogger(__name__)

APP_TITLE = "Launch Pilot"

# Status codes on which the premium model is retried with the free model
FALLBACK_STATUS_CODES = (400, 404)


class AICompletionError(Exception):
    """The completion service failed or returned no usable content."""


class MeteredAIClient:
    """Chat completion client that meters usage against the credit ledger.

    No credits are deducted when a call fails.
    """

    def __init__(
        self,
        ledger: LedgerRepository,
        config: Optional[AIConfig] = None,
        limits: Optional[LimitsConfig] = None,
        api_key: Optional[str] = None
    ):
        """Initialize the metered client.

        Args:
            ledger: Ledger repository used for budget checks and debits
            config: Provider and generation defaults
            limits: Usage limits (warning threshold)
            api_key: Provider API key (defaults to the provider's env variable)

        Raises:
            ValueError: If no API key is available
        """
        self.ledger = ledger
        self.config = config or AIConfig()
        self.limits = limits or LimitsConfig()

        api_key = api_key or self.config.api_key()
        if not api_key:
            raise ValueError(f"{PROVIDER_KEY_ENV[self.config.provider]} is not set")

        self.client = OpenAI(
            api_key=api_key,
            base_url=self.config.base_url,
            default_headers={"X-Title": APP_TITLE},
        )

    def complete(
        self,
        messages: List[Dict[str, str]],
        user_key: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
        tier: Optional[Union[Tier, str]] = None,
        feature: Optional[str] = None
    ) -> str:
        """Create a chat completion and debit its token usage.

        Args:
            messages: Role/content message dictionaries (required)
            user_key: Ledger key of the calling user
            max_tokens: Completion token cap (defaults to config)
            temperature: Sampling temperature (defaults to config)
            model: Model override; otherwise chosen by tier
            tier: Tier override; otherwise read from the ledger
            feature: Feature name recorded with the debit

        Returns:
            Completion text (may be empty)

        Raises:
            ValueError: If messages is empty
            QuotaExceeded: If the request may exceed the remaining allowance
            AICompletionError: If the completion service fails
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        max_tokens = max_tokens or self.config.default_max_tokens
        temperature = self.config.temperature if temperature is None else temperature
        messages = [
            {"role": message["role"], "content": (message.get("content") or "").strip()}
            for message in messages
        ]

        entry = self.ledger.read(user_key)
        user_tier = resolve_tier(tier) if tier else entry.tier
        selected_model = model or model_for_tier(user_tier)

        prompt_tokens = count_messages_tokens(messages)
        check_token_budget(entry, prompt_tokens + max_tokens, self.limits.warn_usage_ratio)

        logger.info("AI request: %s tier using %s", user_tier.value, selected_model)
        response, used_model = self._create(selected_model, messages, temperature, max_tokens)

        text = _first_content(response)
        usage = TokenUsage(
            prompt_tokens=_reported(getattr(response.usage, "prompt_tokens", None), prompt_tokens),
            completion_tokens=_reported(getattr(response.usage, "completion_tokens", None), count_tokens(text)),
        )
        self.ledger.debit(
            user_key,
            usage.total_tokens,
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
            feature=feature,
            model=used_model,
        )
        logger.info(
            "AI response received using %s. Tokens: %d input + %d output",
            used_model, usage.prompt_tokens, usage.completion_tokens
        )
        return text

    def _create(self, model: str, messages, temperature: float, max_tokens: int):
        try:
            return self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            ), model
        except APIStatusError as e:
            if model == PREMIUM_MODEL and e.status_code in FALLBACK_STATUS_CODES:
                logger.info("%s not available (%d), falling back to %s", model, e.status_code, FREE_MODEL)
                return self._create(FREE_MODEL, messages, temperature, max_tokens)
            raise AICompletionError(f"API error: {e.status_code} {e.message}") from e
        except OpenAIError as e:
            raise AICompletionError(f"AI request failed: {e}") from e


def _first_content(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    return choices[0].message.content or ""


def _reported(value: Any, fallback: int) -> int:
    """Prefer provider-reported token counts over local estimates."""
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return fallback
