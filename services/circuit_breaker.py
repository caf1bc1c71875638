"""
Circuit Breaker Pattern for payment gateway calls
Prevents hammering a provider that is already failing
"""

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

from utils.exceptions import GatewayUnavailable

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Blocking calls due to failures
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreakerOpenError(GatewayUnavailable):
    """Raised instead of calling a provider whose circuit is open"""

    code = "circuit_open"


class CircuitBreaker:
    """
    In-process circuit breaker, one instance per gateway.

    States:
    - CLOSED: requests pass through, consecutive failures are counted
    - OPEN: requests are rejected until ``recovery_timeout`` has elapsed
    - HALF_OPEN: trial requests; ``success_threshold`` successes close the
      circuit, any failure re-opens it

    Instances are created by the caller and injected into the gateway
    client; ``clock`` is injectable for tests.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        success_threshold: int = 1,
        expected_exceptions: Tuple[Type[BaseException], ...] = (GatewayUnavailable,),
        clock: Optional[Callable[[], float]] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.expected_exceptions = expected_exceptions
        self.clock = clock or time.monotonic

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_successes = 0
        self.opened_at: Optional[float] = None
        self.stats: Dict[str, int] = {
            "total_calls": 0,
            "successful_calls": 0,
            "failed_calls": 0,
            "blocked_calls": 0,
        }

    def allow_request(self) -> bool:
        if self.state == CircuitState.OPEN:
            if self.opened_at is not None and self.clock() - self.opened_at >= self.recovery_timeout:
                self.state = CircuitState.HALF_OPEN
                self.half_open_successes = 0
                logger.info(f"Circuit {self.name} entering HALF_OPEN state")
                return True
            return False
        return True

    def record_success(self):
        self.stats["successful_calls"] += 1
        if self.state == CircuitState.HALF_OPEN:
            self.half_open_successes += 1
            if self.half_open_successes >= self.success_threshold:
                self._close()
        else:
            self.failure_count = 0

    def record_failure(self):
        self.stats["failed_calls"] += 1
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self._open()

    def _open(self):
        if self.state != CircuitState.OPEN:
            logger.warning(
                f"⚠️ Circuit {self.name} OPEN after {self.failure_count} failures "
                f"(recovery in {self.recovery_timeout}s)"
            )
        self.state = CircuitState.OPEN
        self.opened_at = self.clock()

    def _close(self):
        logger.info(f"✅ Circuit {self.name} CLOSED")
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_successes = 0
        self.opened_at = None

    def reset(self):
        self._close()

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute an async callable with circuit breaker protection"""
        self.stats["total_calls"] += 1
        if not self.allow_request():
            self.stats["blocked_calls"] += 1
            raise CircuitBreakerOpenError(f"Circuit breaker {self.name} is OPEN", provider=self.name)

        try:
            result = await func(*args, **kwargs)
        except self.expected_exceptions:
            self.record_failure()
            raise
        self.record_success()
        return result

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "stats": dict(self.stats),
        }
