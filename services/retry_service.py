"""
Retry Service with Exponential Backoff
Ensures resilient gateway calls
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from config import Config

logger = logging.getLogger(__name__)


class RetryService:
    """Retries with exponential backoff; the sleep function is injectable for tests"""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        initial_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.max_attempts = max_attempts if max_attempts is not None else Config.GATEWAY_MAX_ATTEMPTS
        self.initial_delay = initial_delay if initial_delay is not None else Config.GATEWAY_INITIAL_BACKOFF_SECONDS
        self.max_delay = max_delay if max_delay is not None else Config.GATEWAY_MAX_BACKOFF_SECONDS
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep or asyncio.sleep

    def delays(self):
        """Backoff schedule between attempts, without jitter"""
        delay = self.initial_delay
        for _ in range(max(0, self.max_attempts - 1)):
            yield delay
            delay = min(delay * self.exponential_base, self.max_delay)

    async def retry_async(
        self,
        func: Callable[[], Awaitable[Any]],
        exceptions: tuple = (Exception,),
        operation: Optional[str] = None,
    ) -> Any:
        """
        Retry an async function with exponential backoff

        Args:
            func: Zero-argument async callable to retry
            exceptions: Exceptions that trigger a retry; anything else propagates at once
            operation: Name used in log lines
        """
        name = operation or getattr(func, "__name__", "operation")
        attempt = 0
        delay = self.initial_delay

        while True:
            try:
                return await func()
            except exceptions as e:
                attempt += 1

                if attempt >= self.max_attempts:
                    logger.error(f"Max retry attempts ({self.max_attempts}) reached for {name}: {e}")
                    raise

                actual_delay = delay * (0.5 + random.random()) if self.jitter else delay

                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} failed for {name}: {e}. "
                    f"Retrying in {actual_delay:.2f}s"
                )

                await self.sleep(actual_delay)

                delay = min(delay * self.exponential_base, self.max_delay)
