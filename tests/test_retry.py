#!/usr/bin/env python3
"""
Tests for bounded async retry.

Run tests:
    pytest tests/test_retry.py -v
"""

import asyncio

import pytest

from core.exceptions import AlreadyAssigned, AuthError, NetworkError
from core.retry import with_backoff


class Flaky:
    """Fails with the given exception a fixed number of times."""

    def __init__(self, failures, exc_factory=lambda: NetworkError("connection reset")):
        self.failures = failures
        self.exc_factory = exc_factory
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_factory()
        return "ok"


class TestWithBackoff:

    def test_succeeds_after_transient_failures(self):
        flaky = Flaky(failures=2)
        wrapped = with_backoff(max_attempts=3)(flaky)

        assert asyncio.run(wrapped()) == "ok"
        assert flaky.calls == 3

    def test_exhaustion_reports_attempts(self):
        flaky = Flaky(failures=10)
        wrapped = with_backoff(max_attempts=3)(flaky)

        with pytest.raises(NetworkError) as exc_info:
            asyncio.run(wrapped())

        assert exc_info.value.attempts == 3
        assert flaky.calls == 3

    @pytest.mark.parametrize("exc_factory", [
        lambda: AuthError("token rejected"),
        lambda: AlreadyAssigned("O1", "P2"),
    ])
    def test_non_network_errors_are_not_retried(self, exc_factory):
        flaky = Flaky(failures=1, exc_factory=exc_factory)
        wrapped = with_backoff(max_attempts=5)(flaky)

        with pytest.raises((AuthError, AlreadyAssigned)):
            asyncio.run(wrapped())
        assert flaky.calls == 1

    def test_total_time_cap_stops_early(self):
        flaky = Flaky(failures=10)
        wrapped = with_backoff(max_attempts=10, base_delay=0.05, total_time_cap_s=0.0)(flaky)

        with pytest.raises(NetworkError) as exc_info:
            asyncio.run(wrapped())

        assert exc_info.value.attempts == 1

    def test_defaults_come_from_config(self):
        flaky = Flaky(failures=10)
        wrapped = with_backoff()(flaky)

        with pytest.raises(NetworkError):
            asyncio.run(wrapped())

        assert flaky.calls == 3
