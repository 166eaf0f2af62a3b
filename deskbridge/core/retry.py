from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff for negotiation restarts."""

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        return self.base_delay * (self.factor ** (attempt - 1))

    def allows(self, attempt: int) -> bool:
        return attempt <= self.max_attempts
