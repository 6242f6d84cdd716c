from typing import Optional


class ReconnectPolicy:
    """Exponential reconnect delays: base, 2*base, 4*base ... for ``max_attempts`` tries."""

    def __init__(self, base_delay: float = 1.0, max_attempts: int = 5):
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.attempts = 0

    def next_delay(self) -> Optional[float]:
        """Delay before the next attempt, or None once attempts are exhausted."""
        if self.attempts >= self.max_attempts:
            return None
        self.attempts += 1
        return self.base_delay * (2 ** (self.attempts - 1))

    def reset(self) -> None:
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts
