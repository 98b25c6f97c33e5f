"""
Reconnection policy with exponential backoff and a terminal attempt cap.
"""
import asyncio

from optionflow.utils.constants import DEFAULT_MAX_RECONNECT_ATTEMPTS, DEFAULT_BASE_RECONNECT_DELAY_MS
from optionflow.utils.error_handler import ReconnectExhaustedError
from optionflow.utils.logger import get_logger


class ReconnectPolicy:
    """
    Backoff state for one venue session.

    Delay for attempt ``n`` (1-based) is ``base_delay_ms * 2 ** (n - 1)``.
    Asking for an attempt beyond ``max_attempts`` raises
    ``ReconnectExhaustedError`` instead of scheduling another retry.
    """

    def __init__(self,
                 max_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
                 base_delay_ms: int = DEFAULT_BASE_RECONNECT_DELAY_MS,
                 name: str = "ReconnectPolicy"):
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.attempt_count = 0
        self.logger = get_logger(name)

    def get_delay(self, attempt: int) -> int:
        """Delay in milliseconds before the given attempt"""
        if attempt < 1:
            raise ValueError(f"Attempt numbers start at 1, got {attempt}")
        if attempt > self.max_attempts:
            raise ReconnectExhaustedError(self.max_attempts)
        return self.base_delay_ms * (2 ** (attempt - 1))

    def should_attempt_reconnect(self) -> bool:
        """Check if reconnection should be attempted"""
        return self.attempt_count < self.max_attempts

    def record_attempt(self) -> int:
        """Record a reconnection attempt and return its delay in milliseconds"""
        delay = self.get_delay(self.attempt_count + 1)
        self.attempt_count += 1
        self.logger.info(f"Reconnection attempt {self.attempt_count}/{self.max_attempts} in {delay}ms")
        return delay

    async def wait(self) -> int:
        """Record an attempt and sleep for its backoff delay"""
        delay = self.record_attempt()
        await asyncio.sleep(delay / 1000)
        return delay

    def reset(self):
        """Reset reconnection state after successful connection"""
        if self.attempt_count:
            self.logger.info("Reconnection state reset - connection stable")
        self.attempt_count = 0
