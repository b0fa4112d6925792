"""
Metered OpenAI client wrapper.

Reports token usage of every completed chat call to the usage metering
bridge, which records a usage fact and charges credits. The provider response
is returned unchanged.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.actor import ActorContext
from ..core.metering import AICallRecord, MeteringResult, UsageMeteringBridge

logger = logging.getLogger(__name__)

PROVIDER = "openai"


class MeteredOpenAI:
    """OpenAI client wrapper that meters usage against an actor's credits.

    Provider errors propagate untouched and nothing is metered for a call
    that did not complete. Metering problems never fail the call; they are
    kept on ``last_metering`` for the caller to inspect.
    """

    def __init__(self, model: str, feature: str, bridge: UsageMeteringBridge, client: Optional[OpenAI] = None):
        """Initialize metered OpenAI client.

        Args:
            model: OpenAI model name (required)
            feature: Feature the calls are charged to (required)
            bridge: Usage metering bridge that records and charges calls
            client: Preconfigured OpenAI client; a default one when None

        Raises:
            ValueError: If model or feature is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not feature or not feature.strip():
            raise ValueError("feature is required and cannot be empty")

        self.model = model
        self.feature = feature
        self.bridge = bridge
        self.client = client or OpenAI()
        self.last_metering: Optional[MeteringResult] = None

    def chat(
        self,
        actor: ActorContext,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion and meter its usage.

        Args:
            actor: User the call is made for
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty or the response has no usage
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        self.last_metering = self.bridge.record_usage(actor, AICallRecord(
            model=self.model,
            provider=PROVIDER,
            feature=self.feature,
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
            request_id=response.id
        ))
        if not self.last_metering.success:
            logger.warning(
                f"[METERING] Call {response.id} completed but was not charged: "
                f"{self.last_metering.error_code}"
            )
        return response
