"""
Retry and Timeout Supervision

Retry policy configuration and the supervisor that races a step's unit of
work against a timer and retries retryable failures with exponential backoff.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..errors import ErrorKind, StepError, StepTimeoutError
from ..runtime_data import StepResult

UnitOfWork = Callable[[], Awaitable[StepResult]]
RetryPredicate = Callable[[StepError, int], bool]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration for a workflow step.

    ``max_retries`` counts retries after the first attempt (0 = no retries).
    Delays are in seconds. When ``retryable_error_codes`` is empty every error
    is retryable; ``should_retry`` overrides the allow-list when given.
    """

    max_retries: int = 0
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.0
    retryable_error_codes: Tuple[str, ...] = ()
    should_retry: Optional[RetryPredicate] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        """
        Create from dictionary.

        Accepts snake_case keys, the camelCase keys of the JSON description
        format, and ``*_ms`` variants for delays.

        Args:
            data: Retry policy dictionary

        Returns:
            RetryPolicy instance
        """

        def _pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        initial_delay = _pick("initial_delay", "initialDelay")
        if initial_delay is None:
            initial_ms = _pick("initial_delay_ms", "initialDelayMs")
            initial_delay = initial_ms / 1000.0 if initial_ms is not None else 1.0

        max_delay = _pick("max_delay", "maxDelay")
        if max_delay is None:
            max_ms = _pick("max_delay_ms", "maxDelayMs")
            max_delay = max_ms / 1000.0 if max_ms is not None else 30.0

        codes = _pick(
            "retryable_error_codes", "retryableErrorCodes", "retryableErrors", default=()
        )

        return cls(
            max_retries=int(_pick("max_retries", "maxRetries", default=0)),
            initial_delay=float(initial_delay),
            max_delay=float(max_delay),
            backoff_multiplier=float(
                _pick("backoff_multiplier", "backoffMultiplier", default=2.0)
            ),
            jitter_factor=float(_pick("jitter_factor", "jitterFactor", default=0.0)),
            retryable_error_codes=tuple(codes),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (the predicate is not serializable)."""
        return {
            "max_retries": self.max_retries,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "backoff_multiplier": self.backoff_multiplier,
            "jitter_factor": self.jitter_factor,
            "retryable_error_codes": list(self.retryable_error_codes),
        }

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty if valid)."""
        errors = []
        if self.max_retries < 0:
            errors.append("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            errors.append("retry delays must be >= 0")
        if self.backoff_multiplier < 1:
            errors.append("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter_factor <= 1:
            errors.append("jitter_factor must be between 0 and 1")
        return errors

    def calculate_delay(
        self, attempt: int, rand: Callable[[], float] = random.random
    ) -> float:
        """
        Calculate the delay before retry number ``attempt`` (1-based).

        ``initial_delay * multiplier^(attempt-1)``, capped at ``max_delay``,
        then shifted by up to +/- ``jitter_factor`` of the capped delay.

        Raises:
            ValueError: If attempt is < 1
        """
        if attempt < 1:
            raise ValueError("Attempt must be >= 1")

        delay = self.initial_delay * (self.backoff_multiplier ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter_factor > 0:
            jitter_range = delay * self.jitter_factor
            delay = max(0.0, delay + (rand() * 2 - 1) * jitter_range)

        return delay

    def is_retryable(self, error: StepError, attempt: int) -> bool:
        """Check whether ``error`` raised on ``attempt`` (1-based) may be retried."""
        if self.should_retry is not None:
            return bool(self.should_retry(error, attempt))
        if not self.retryable_error_codes:
            return True
        return (error.code or ErrorKind.UNKNOWN.value) in self.retryable_error_codes

    def should_attempt_retry(self, attempt: int) -> bool:
        """Check whether retry number ``attempt`` (1-based) is within the bound."""
        return attempt <= self.max_retries


class RetryPolicies:
    """Predefined retry policies for common scenarios."""

    NONE = RetryPolicy(max_retries=0, initial_delay=0.0, max_delay=0.0, backoff_multiplier=1.0)

    CONSERVATIVE = RetryPolicy(
        max_retries=3, initial_delay=1.0, max_delay=10.0, jitter_factor=0.1
    )

    AGGRESSIVE = RetryPolicy(
        max_retries=5, initial_delay=0.1, max_delay=5.0, jitter_factor=0.2
    )

    LLM_API = RetryPolicy(
        max_retries=3,
        initial_delay=2.0,
        max_delay=30.0,
        backoff_multiplier=3.0,
        jitter_factor=0.3,
        retryable_error_codes=("RATE_LIMIT", "TIMEOUT", "SERVICE_UNAVAILABLE"),
    )

    NETWORK = RetryPolicy(
        max_retries=4,
        initial_delay=0.5,
        max_delay=8.0,
        jitter_factor=0.15,
        retryable_error_codes=("ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "NETWORK_ERROR"),
    )


class StepSupervisor:
    """
    Wraps one logical step invocation with a timeout race and retries.

    On timeout the awaited unit of work is cancelled through asyncio; work the
    collaborator started outside that coroutine is not tracked.
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        """
        Initialize supervisor.

        Args:
            sleep: Coroutine used for backoff waits
            rand: Random source in [0, 1) used for jitter
        """
        self.logger = logging.getLogger(__name__)
        self._sleep = sleep
        self._rand = rand

    async def supervise(
        self,
        step_id: str,
        unit_of_work: UnitOfWork,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
    ) -> StepResult:
        """
        Run ``unit_of_work`` until it succeeds or retries are exhausted.

        Args:
            step_id: Step being supervised (named in timeout errors)
            unit_of_work: Factory returning a fresh awaitable per attempt
            retry_policy: Retry configuration (None = single attempt)
            timeout: Seconds allowed per attempt (None = unbounded)

        Returns:
            The successful StepResult, or the last FAILED one
        """
        policy = retry_policy or RetryPolicies.NONE
        attempt = 0

        while True:
            started_at = datetime.utcnow()
            result = await self._attempt(step_id, unit_of_work, timeout, started_at)
            result = replace(result, retry_count=attempt)

            if result.succeeded:
                return result

            retry_number = attempt + 1
            if not policy.should_attempt_retry(retry_number):
                return result
            try:
                retryable = policy.is_retryable(result.error, retry_number)
            except Exception as e:
                self.logger.error(
                    f"Retry predicate for step '{step_id}' raised: {e}", exc_info=True
                )
                return result
            if not retryable:
                self.logger.info(
                    f"Step '{step_id}' failed with non-retryable error "
                    f"'{result.error.code}'"
                )
                return result

            delay = policy.calculate_delay(retry_number, self._rand)
            self.logger.warning(
                f"Step '{step_id}' failed ({result.error}); "
                f"retry {retry_number}/{policy.max_retries} in {delay:.3f}s"
            )
            await self._sleep(delay)
            attempt = retry_number

    async def _attempt(
        self,
        step_id: str,
        unit_of_work: UnitOfWork,
        timeout: Optional[float],
        started_at: datetime,
    ) -> StepResult:
        try:
            if timeout is None:
                return await unit_of_work()
            return await asyncio.wait_for(unit_of_work(), timeout=timeout)
        except asyncio.TimeoutError:
            error = StepError.from_exception(
                StepTimeoutError(f"Step '{step_id}' timed out after {timeout}s"),
                step_id=step_id,
            )
        except Exception as e:
            error = StepError.from_exception(e, step_id=step_id)
            if error.kind == ErrorKind.UNKNOWN:
                self.logger.error(f"Step '{step_id}' raised: {e}", exc_info=True)
            else:
                self.logger.warning(f"Step '{step_id}' failed: {e}")

        return StepResult.failed(
            step_id,
            error,
            started_at=started_at,
            completed_at=datetime.utcnow(),
        )
