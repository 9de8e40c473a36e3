"""
Tests for retries with backoff

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import pytest

from fastbeam_core.engine import TransientCompileError
from fastbeam_core.resilience import RetryConfig, backoff_delay, retry_call


class Flaky:
    """Callable failing a fixed number of times before succeeding."""

    def __init__(self, failures, exc=TransientCompileError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return "ok"


def _config(attempts):
    return RetryConfig(max_attempts=attempts, base_delay=0.0, retry_on=(TransientCompileError,))


class TestBackoff:
    def test_doubles_per_attempt(self):
        config = RetryConfig(base_delay=0.5)
        assert [backoff_delay(n, config) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_capped_at_max_delay(self):
        config = RetryConfig(base_delay=1.0, max_delay=2.5)
        assert backoff_delay(10, config) == 2.5


class TestRetryCall:
    """Tests for the retry loop."""

    def test_succeeds_after_transient_failure(self):
        func = Flaky(1)
        assert retry_call(func, config=_config(2)) == "ok"
        assert func.calls == 2

    def test_gives_up_after_max_attempts(self):
        func = Flaky(5)
        with pytest.raises(TransientCompileError):
            retry_call(func, config=_config(3))
        assert func.calls == 3

    def test_other_exceptions_not_retried(self):
        """Test a deterministic error propagates on the first attempt."""
        func = Flaky(1, exc=ValueError)
        with pytest.raises(ValueError):
            retry_call(func, config=_config(3))
        assert func.calls == 1

    def test_single_attempt(self):
        func = Flaky(1)
        with pytest.raises(TransientCompileError):
            retry_call(func, config=_config(1))
        assert func.calls == 1

    def test_passes_arguments(self):
        assert retry_call(lambda a, b=0: a + b, 40, b=2, config=_config(2)) == 42
