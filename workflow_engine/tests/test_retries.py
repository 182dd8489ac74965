"""
Tests for retry policies and the step supervisor
"""

import asyncio

import pytest

from workflow_engine.errors import CollaboratorError, ErrorKind, StepError
from workflow_engine.runtime_data import StepResult
from workflow_engine.workflows.retries import RetryPolicies, RetryPolicy, StepSupervisor


def _error(code):
    return StepError(ErrorKind.COLLABORATOR_ERROR, "failed", code=code)


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_exponential_delay_capped(self):
        """Test exponential backoff capped at max_delay."""
        policy = RetryPolicy(max_retries=5, initial_delay=1.0, max_delay=5.0)

        assert policy.calculate_delay(1) == 1.0
        assert policy.calculate_delay(2) == 2.0
        assert policy.calculate_delay(3) == 4.0
        assert policy.calculate_delay(4) == 5.0

    def test_jitter_bounds(self):
        """Test the jitter range around the delay."""
        policy = RetryPolicy(initial_delay=1.0, max_delay=10.0, jitter_factor=0.2)

        assert policy.calculate_delay(1, rand=lambda: 0.0) == pytest.approx(0.8)
        assert policy.calculate_delay(1, rand=lambda: 1.0) == pytest.approx(1.2)
        assert policy.calculate_delay(1, rand=lambda: 0.5) == pytest.approx(1.0)

    def test_invalid_attempt(self):
        """Test that attempt numbers start at 1."""
        with pytest.raises(ValueError):
            RetryPolicy().calculate_delay(0)

    def test_retryable_allow_list(self):
        """Test retrying only allow-listed error codes."""
        policy = RetryPolicy(max_retries=2, retryable_error_codes=("RATE_LIMIT",))

        assert policy.is_retryable(_error("RATE_LIMIT"), 1)
        assert not policy.is_retryable(_error("AUTH"), 1)

    def test_everything_retryable_without_allow_list(self):
        """Test that any error is retryable without an allow list."""
        assert RetryPolicy(max_retries=1).is_retryable(_error("ANY"), 1)

    def test_custom_predicate_wins(self):
        """Test that a custom predicate overrides the allow list."""
        policy = RetryPolicy(
            max_retries=3,
            retryable_error_codes=("RATE_LIMIT",),
            should_retry=lambda error, attempt: attempt < 2,
        )

        assert policy.is_retryable(_error("OTHER"), 1)
        assert not policy.is_retryable(_error("RATE_LIMIT"), 2)

    def test_should_attempt_retry(self):
        """Test the retry count bound."""
        policy = RetryPolicy(max_retries=2)

        assert policy.should_attempt_retry(2)
        assert not policy.should_attempt_retry(3)

    def test_from_dict_camel_case_milliseconds(self):
        """Test loading a policy with camelCase millisecond keys."""
        policy = RetryPolicy.from_dict(
            {
                "maxRetries": 3,
                "initialDelayMs": 500,
                "maxDelayMs": 4000,
                "backoffMultiplier": 3,
                "retryableErrors": ["TIMEOUT"],
            }
        )

        assert policy.max_retries == 3
        assert policy.initial_delay == 0.5
        assert policy.max_delay == 4.0
        assert policy.backoff_multiplier == 3.0
        assert policy.retryable_error_codes == ("TIMEOUT",)

    def test_validate(self):
        """Test retry policy validation."""
        assert RetryPolicy().validate() == []
        assert RetryPolicy(max_retries=-1, jitter_factor=2).validate() == [
            "max_retries must be >= 0",
            "jitter_factor must be between 0 and 1",
        ]

    def test_presets(self):
        """Test the predefined retry policies."""
        assert RetryPolicies.NONE.max_retries == 0
        assert RetryPolicies.LLM_API.is_retryable(_error("RATE_LIMIT"), 1)
        assert not RetryPolicies.NETWORK.is_retryable(_error("RATE_LIMIT"), 1)
        for preset in (
            RetryPolicies.CONSERVATIVE,
            RetryPolicies.AGGRESSIVE,
            RetryPolicies.LLM_API,
            RetryPolicies.NETWORK,
        ):
            assert preset.validate() == []


class TestStepSupervisor:
    """Tests for StepSupervisor."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, supervisor, recording_sleep):
        """Test a unit of work that succeeds at once."""
        async def work():
            return StepResult.completed("s1", "done")

        result = await supervisor.supervise("s1", work)

        assert result.succeeded
        assert result.output == "done"
        assert result.retry_count == 0
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_exception_captured_as_failed_result(self, supervisor):
        """Test that raised errors become failed results."""
        async def work():
            raise CollaboratorError("tool exploded", code="BOOM")

        result = await supervisor.supervise("s1", work)

        assert not result.succeeded
        assert result.error.kind == ErrorKind.COLLABORATOR_ERROR
        assert result.error.code == "BOOM"
        assert result.error.step_id == "s1"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_unknown(self, supervisor):
        """Test that unclassified errors are UNKNOWN."""
        async def work():
            raise KeyError("x")

        result = await supervisor.supervise("s1", work)

        assert result.error.kind == ErrorKind.UNKNOWN
        assert result.error.exception_type == "KeyError"

    @pytest.mark.asyncio
    async def test_retries_until_success(self, supervisor, recording_sleep):
        """Test retrying until the work succeeds."""
        calls = []

        async def work():
            calls.append(1)
            if len(calls) < 3:
                raise CollaboratorError("flaky", code="RATE_LIMIT")
            return StepResult.completed("s1", len(calls))

        policy = RetryPolicy(max_retries=3, initial_delay=0.1, max_delay=1.0)
        result = await supervisor.supervise("s1", work, retry_policy=policy)

        assert result.succeeded
        assert result.output == 3
        assert result.retry_count == 2
        assert recording_sleep.delays == [pytest.approx(0.1), pytest.approx(0.2)]

    @pytest.mark.asyncio
    async def test_retries_exhausted_returns_last_failure(self, supervisor):
        """Test the result after retries run out."""
        calls = []

        async def work():
            calls.append(1)
            raise CollaboratorError(f"attempt {len(calls)}")

        result = await supervisor.supervise("s1", work, retry_policy=RetryPolicy(max_retries=2))

        assert len(calls) == 3
        assert not result.succeeded
        assert result.error.message == "attempt 3"
        assert result.retry_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops(self, supervisor):
        """Test that non-retryable errors are not retried."""
        calls = []

        async def work():
            calls.append(1)
            raise CollaboratorError("denied", code="AUTH")

        policy = RetryPolicy(max_retries=5, retryable_error_codes=("RATE_LIMIT",))
        result = await supervisor.supervise("s1", work, retry_policy=policy)

        assert len(calls) == 1
        assert result.error.code == "AUTH"

    @pytest.mark.asyncio
    async def test_timeout(self, supervisor):
        """Test that slow work times out."""
        async def work():
            await asyncio.sleep(10)
            return StepResult.completed("slow_step")

        result = await supervisor.supervise("slow_step", work, timeout=0.02)

        assert not result.succeeded
        assert result.error.kind == ErrorKind.TIMEOUT
        assert "slow_step" in result.error.message
        assert "timed out" in result.error.message

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, supervisor):
        """Test retrying after a timeout."""
        calls = []

        async def work():
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(10)
            return StepResult.completed("s1", "second try")

        policy = RetryPolicy(max_retries=1, retryable_error_codes=("TIMEOUT",))
        result = await supervisor.supervise("s1", work, retry_policy=policy, timeout=0.02)

        assert result.succeeded
        assert result.output == "second try"
        assert result.retry_count == 1

    @pytest.mark.asyncio
    async def test_failing_retry_predicate_returns_failed_result(self, supervisor, recording_sleep):
        """Test that an exception from should_retry ends retries with the last failure."""
        calls = []

        def broken_predicate(error, attempt):
            raise KeyError("predicate bug")

        async def work():
            calls.append(1)
            raise CollaboratorError("flaky", code="RATE_LIMIT")

        policy = RetryPolicy(max_retries=2, should_retry=broken_predicate)
        result = await supervisor.supervise("flaky", work, retry_policy=policy)

        assert len(calls) == 1
        assert not result.succeeded
        assert result.error.code == "RATE_LIMIT"
        assert result.retry_count == 0
        assert recording_sleep.delays == []
