"""
Metered OpenAI client wrapper.

Charges each chat completion to a user's prepaid balance.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.metering import ChargeOutcome, UNKNOWN_USER_NAME, UsageEvent
from ..core.token_counter import Message
from ..runtime import Runtime

logger = logging.getLogger(__name__)


class MeteredOpenAI:
    """OpenAI client wrapper that debits users for completions.

    The runtime is initialized on the first chat call, which starts the
    monthly balance reset scheduler. Call ``runtime.shutdown()`` when done.

    Provider-reported usage is attached to the reply, so charges use the
    REPORTED token source whenever the API returns usage.
    """

    def __init__(self, model: str, runtime: Runtime, client: Optional[OpenAI] = None):
        """Initialize metered OpenAI client.

        Args:
            model: OpenAI model name (required)
            runtime: Runtime whose meter charges the completions
            client: OpenAI client to use (defaults to ``OpenAI()``)

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.runtime = runtime
        self.client = client or OpenAI()

    def chat(
        self,
        user_id: str,
        messages: List[Dict[str, str]],
        user_name: str = UNKNOWN_USER_NAME,
        **kwargs: Any
    ) -> tuple:
        """Create a chat completion and charge it to ``user_id``.

        The provider call happens first; a failed charge does not hide the
        response but is returned in the outcome.

        Args:
            user_id: Account to charge (required)
            messages: List of message dictionaries (required)
            user_name: Display name stored with the usage record
            **kwargs: Additional OpenAI parameters

        Returns:
            (OpenAI chat completion response, ChargeOutcome)

        Raises:
            ValueError: If messages is empty
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        self.runtime.ensure_initialized()

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            **kwargs
        )

        reply = response.choices[0].message
        usage = None
        if response.usage is not None:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
            }

        exchange = [Message.from_dict(m) for m in messages]
        exchange.append(Message(role=reply.role, content=reply.content or "", usage=usage))

        event = UsageEvent(
            model_id=self.model,
            messages=exchange,
            user_id=user_id,
            user_name=user_name,
        )
        outcome: ChargeOutcome = self.runtime.meter.process(event)
        if not outcome.success:
            logger.warning("Completion %s not charged: %s", response.id, outcome.error)
        return response, outcome
