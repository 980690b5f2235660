"""
Token counting from upstream responses.

Normalizes the ``usage`` block of a chat-completions response.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by the upstream API for one call.

    ``reported_total`` keeps the provider's own total when it sends one;
    otherwise the total is prompt + completion.
    """
    prompt_tokens: int
    completion_tokens: int
    reported_total: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        """Total tokens used (provider total, or prompt + completion)."""
        if self.reported_total is not None:
            return self.reported_total
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def from_api(cls, usage: Any) -> "TokenUsage":
        """Build from an SDK usage object, a plain dict, or None."""
        if usage is None:
            return cls(prompt_tokens=0, completion_tokens=0)
        if isinstance(usage, dict):
            get = usage.get
        else:
            def get(name, default=None):
                return getattr(usage, name, default)
        total = get("total_tokens", None)
        return cls(
            prompt_tokens=int(get("prompt_tokens", 0) or 0),
            completion_tokens=int(get("completion_tokens", 0) or 0),
            reported_total=int(total) if total is not None else None,
        )

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
