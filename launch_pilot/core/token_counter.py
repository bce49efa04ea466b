"""
Token counting and usage tracking.

Estimates token counts for prompts and completions when the provider
does not report them.
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

# Rough rule of thumb: one token is about four characters of English text
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for a single completion."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def count_tokens(text: Optional[str]) -> int:
    """Estimate the token count of a piece of text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def count_messages_tokens(messages: Optional[Iterable[Dict[str, str]]]) -> int:
    """Estimate the token count of a list of chat messages.

    Only message contents are counted; roles and framing are ignored.
    """
    if not messages:
        return 0
    return sum(count_tokens(message.get("content") or "") for message in messages)
