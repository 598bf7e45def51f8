"""Character-based token estimation.

Estimates are only used to price a request before the vendor reports real
usage (routing cost scores, in-flight stream pricing, budget previews). Each
vendor tokenises differently, so the ratio and the per-message structural
overhead are provider specific.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from model_hub.types import ChatMessage


@dataclass(frozen=True)
class TokenEstimator:
    """Estimate token counts from character counts.

    Attributes:
        chars_per_token: Average characters per token for the vendor
        message_overhead: Tokens added per message for role and framing
    """

    chars_per_token: float = 4.0
    message_overhead: int = 10

    def estimate_text(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def estimate_messages(self, messages: Sequence[ChatMessage]) -> int:
        return sum(
            self.estimate_text(m.content) + self.message_overhead for m in messages
        )

    def estimate_output(self, input_tokens: int, max_tokens: int) -> int:
        """Expected completion length used when pricing a request up front."""
        return math.floor(min(input_tokens * 0.5, max_tokens * 0.3))

    def fits_in_context(
        self,
        messages: Sequence[ChatMessage],
        context_window: int,
        reserved_output: int = 0,
    ) -> bool:
        return self.estimate_messages(messages) + reserved_output <= context_window

    def truncate_to_fit(
        self,
        messages: Sequence[ChatMessage],
        context_window: int,
        reserved_output: int = 0,
    ) -> list[ChatMessage]:
        """Drop the oldest non-system messages until the conversation fits.

        System messages are always kept. The newest messages win over older
        ones; the returned list keeps the original order.
        """
        budget = context_window - reserved_output
        system = [m for m in messages if m.role == "system"]
        used = sum(self.estimate_text(m.content) + self.message_overhead for m in system)

        kept: list[ChatMessage] = []
        for message in reversed([m for m in messages if m.role != "system"]):
            cost = self.estimate_text(message.content) + self.message_overhead
            if used + cost > budget:
                break
            kept.append(message)
            used += cost

        kept_ids = {id(m) for m in kept}
        return [m for m in messages if m.role == "system" or id(m) in kept_ids]


OPENAI_ESTIMATOR = TokenEstimator(chars_per_token=4.0, message_overhead=10)
ANTHROPIC_ESTIMATOR = TokenEstimator(chars_per_token=3.5, message_overhead=8)
LITELLM_ESTIMATOR = TokenEstimator(chars_per_token=4.0, message_overhead=12)
