"""
Unit tests for the retry policy.

Tests cover:
- Transient failures retried until success
- Budget exhaustion
- Non-retryable errors propagated immediately
- Per-attempt timeout
"""

import asyncio

import pytest

from pgpitr.pitr_server.config import RetryConfig
from pgpitr.pitr_server.errors import (
    ArtifactNotFoundError,
    ChecksumMismatchError,
    RetryBudgetExhausted,
    TransientStorageError,
)
from pgpitr.pitr_server.retry import RetryPolicy
from pgpitr.pitr_server.storage import InMemoryStorageBackend


class Flaky:
    """Fails a fixed number of times, then returns a value."""

    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or TransientStorageError("flaky")
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    @pytest.fixture
    def policy(self):
        return RetryPolicy(max_attempts=3, base_delay=0.001, max_delay=0.01, timeout=1.0, jitter=0.0)

    @pytest.mark.asyncio
    async def test_success_first_try(self, policy):
        fn = Flaky(0)
        assert await policy.run("op", fn, "ok") == "ok"
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, policy):
        fn = Flaky(2)
        assert await policy.run("op", fn, "ok") == "ok"
        assert fn.calls == 3

    @pytest.mark.asyncio
    async def test_exhaustion_raises(self, policy):
        fn = Flaky(5)
        with pytest.raises(RetryBudgetExhausted) as exc_info:
            await policy.run("wal put", fn, "ok")

        assert fn.calls == 3
        assert exc_info.value.code == "RETRY_EXHAUSTED"
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TransientStorageError)
        assert "wal put" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self, policy):
        fn = Flaky(1, error=ConnectionResetError("reset"))
        assert await policy.run("op", fn, 1) == 1

    @pytest.mark.asyncio
    async def test_corruption_not_retried(self, policy):
        fn = Flaky(1, error=ChecksumMismatchError("k", "sha256:a", "sha256:b"))
        with pytest.raises(ChecksumMismatchError):
            await policy.run("op", fn, 1)
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_not_found_not_retried(self, policy):
        fn = Flaky(1, error=ArtifactNotFoundError("k"))
        with pytest.raises(ArtifactNotFoundError):
            await policy.run("op", fn, 1)
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, policy):
        fn = Flaky(1, error=ValueError("bad"))
        with pytest.raises(ValueError):
            await policy.run("op", fn, 1)
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_transient(self):
        policy = RetryPolicy(max_attempts=2, base_delay=0.001, timeout=0.01, jitter=0.0)
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(1)

        with pytest.raises(RetryBudgetExhausted):
            await policy.run("slow", slow)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_with_injected_storage_failures(self, policy):
        storage = InMemoryStorageBackend()
        storage.inject_failure("put", times=2)

        checksum = await policy.run("put", storage.put, "00000001/wal/x", b"data")

        assert checksum.startswith("sha256:")
        assert storage.calls["put"] == 3
        assert "00000001/wal/x" in storage

    def test_delay_is_bounded(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=10.0, max_delay=5.0, jitter=0.0)
        assert policy.delay_for(1) == 1.0
        assert policy.delay_for(2) == 5.0
        assert policy.delay_for(10) == 5.0

    def test_jitter_adds_at_most_fraction(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=0.5)
        for _ in range(20):
            assert 1.0 <= policy.delay_for(1) <= 1.5

    def test_from_config(self):
        policy = RetryPolicy.from_config(
            RetryConfig(max_attempts=4, base_delay_ms=250, max_delay_ms=2000, multiplier=3.0)
        )
        assert policy.max_attempts == 4
        assert policy.base_delay == 0.25
        assert policy.max_delay == 2.0
        assert policy.multiplier == 3.0
