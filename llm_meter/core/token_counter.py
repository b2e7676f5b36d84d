"""
Token counting and usage tracking.

Derives input/output token counts for a completed exchange from one of
three sources, in fixed precedence:

1. REPORTED - counts sent back by the upstream provider
2. ESTIMATED - character ratio, for texts too large to tokenize quickly
3. TOKENIZED - exact count from the GPT-4 tokenizer
"""

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence

import tiktoken

from .errors import TokenizationError

logger = logging.getLogger(__name__)

# Exact tokenization of very large texts is too slow for the request path
CHAR_LIMIT_FOR_ESTIMATION = 50000
CHARS_PER_TOKEN = 4

Encoder = Callable[[str], Sequence[int]]


class TokenSource(Enum):
    """Where a token count came from."""
    REPORTED = "reported"
    ESTIMATED = "estimated"
    TOKENIZED = "tokenized"


@dataclass(frozen=True)
class Message:
    """One chat message, optionally carrying provider usage stats."""
    role: str
    content: str
    usage: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Build a message from a chat payload entry."""
        return cls(
            role=data.get("role", ""),
            content=data.get("content") or "",
            usage=data.get("usage"),
        )

    @property
    def reported_tokens(self) -> Optional[tuple]:
        """(prompt_tokens, completion_tokens) if the provider reported both."""
        if not self.usage:
            return None
        prompt = self.usage.get("prompt_tokens")
        completion = self.usage.get("completion_tokens")
        if prompt and completion:
            return int(prompt), int(completion)
        return None


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    ``input_tokens`` is not clamped: with estimated or tokenized counts it
    can be zero or negative when the last message dominates the exchange.
    """
    input_tokens: int
    output_tokens: int
    source: TokenSource = TokenSource.REPORTED

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


@lru_cache(maxsize=1)
def _gpt4_encoding():
    return tiktoken.encoding_for_model("gpt-4")


def gpt4_encode(text: str) -> List[int]:
    """Encode text with the GPT-4 tokenizer, treating special tokens as text."""
    return _gpt4_encoding().encode(text, disallowed_special=())


class UsageEstimator:
    """Chooses a token source for a completed exchange and counts tokens."""

    def __init__(
        self,
        encode: Optional[Encoder] = None,
        char_limit: int = CHAR_LIMIT_FOR_ESTIMATION,
        chars_per_token: int = CHARS_PER_TOKEN,
    ):
        """Initialize the estimator.

        Args:
            encode: Exact tokenizer (defaults to the GPT-4 encoding)
            char_limit: Aggregate character count above which to estimate
            chars_per_token: Characters per token used for estimation
        """
        self.encode = encode or gpt4_encode
        self.char_limit = char_limit
        self.chars_per_token = chars_per_token

    def estimate(
        self, messages: Sequence[Message], last_message: Optional[Message] = None
    ) -> TokenUsage:
        """Count input and output tokens for an exchange.

        Args:
            messages: Every message of the exchange, in order
            last_message: The response message (defaults to ``messages[-1]``)

        Returns:
            TokenUsage tagged with the source used

        Raises:
            ValueError: If there are no messages
            TokenizationError: If counting fails unexpectedly
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        last_message = last_message if last_message is not None else messages[-1]

        reported = last_message.reported_tokens
        if reported is not None:
            input_tokens, output_tokens = reported
            logger.info(
                "Token source: LLM usage data (prompt: %d, completion: %d)",
                input_tokens, output_tokens,
            )
            return TokenUsage(input_tokens, output_tokens, TokenSource.REPORTED)

        logger.info("No usage data from LLM, falling back to tokenization")
        try:
            return self._count(messages, last_message)
        except Exception as e:
            raise TokenizationError(f"Token counting failed: {e}") from e

    def _count(self, messages: Sequence[Message], last_message: Message) -> TokenUsage:
        start = time.monotonic()
        total_chars = sum(len(m.content) for m in messages)
        output_chars = len(last_message.content)

        if total_chars > self.char_limit:
            total_tokens = math.ceil(total_chars / self.chars_per_token)
            output_tokens = math.ceil(output_chars / self.chars_per_token)
            logger.info(
                "Large input detected (%d chars), using estimation: %d tokens",
                total_chars, total_tokens,
            )
            return TokenUsage(
                total_tokens - output_tokens, output_tokens, TokenSource.ESTIMATED
            )

        output_tokens = len(self.encode(last_message.content))
        total_tokens = sum(len(self.encode(m.content)) for m in messages)
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "Tokenization completed in %.0fms (%d chars -> %d tokens)",
            elapsed_ms, total_chars, total_tokens,
        )
        return TokenUsage(
            total_tokens - output_tokens, output_tokens, TokenSource.TOKENIZED
        )
