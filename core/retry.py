#!/usr/bin/env python3
"""
Retry Module with Exponential Backoff (asyncio)

Bounded retry for calls to the authoritative backend:
- Exponential backoff with jitter
- Hard total-time budget
- Structured retry_attempt events on AUDIT_LOG

Only NetworkError is retried by default. Business-rule conflicts, auth and
validation failures surface on the first attempt.

Usage:
    @with_backoff(max_attempts=3, base_delay=0.2)
    async def pull():
        return await backend.pull_all()
"""

import asyncio
import functools
import logging
import random
import time

import config
from core.exceptions import NetworkError

log = logging.getLogger(__name__)


def with_backoff(max_attempts=None, base_delay=None, max_delay=None, total_time_cap_s=None,
                 retry_on=(NetworkError,)):
    """
    Exponential backoff with jitter and a hard overall time budget.

    Unset arguments fall back to the RETRY_* config values at call time.

    Args:
        max_attempts: Maximum number of attempts
        base_delay: Initial delay in seconds (doubles each retry)
        max_delay: Maximum delay cap in seconds
        total_time_cap_s: Total time budget across all retries
        retry_on: Tuple of exception types to retry on

    Returns:
        Decorated coroutine function with retry logic
    """
    def deco(fn):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            attempts_max = max_attempts or config.get_config("RETRY_MAX_ATTEMPTS")
            delay = base_delay if base_delay is not None else config.get_config("RETRY_BASE_DELAY_S")
            delay_cap = max_delay if max_delay is not None else config.get_config("RETRY_MAX_DELAY_S")
            time_cap = total_time_cap_s if total_time_cap_s is not None else config.get_config("RETRY_TOTAL_TIME_CAP_S")
            operation = getattr(fn, "__name__", type(fn).__name__)

            start = time.monotonic()
            attempt = 0

            while True:
                attempt += 1
                try:
                    return await fn(*args, **kwargs)

                except retry_on as e:
                    elapsed = time.monotonic() - start
                    error_message = str(e)[:300]

                    backoff_ms = int(min(delay_cap, delay) * (1.0 + 0.25 * random.random()) * 1000)
                    will_retry = attempt < attempts_max and elapsed + backoff_ms / 1000.0 <= time_cap

                    _log_retry_attempt(operation, attempt, attempts_max, e, error_message, backoff_ms, will_retry)

                    if not will_retry:
                        log.warning(
                            f"Retry failed for {operation}: attempt {attempt}/{attempts_max}, "
                            f"elapsed {elapsed:.2f}s, error: {error_message}"
                        )
                        if isinstance(e, NetworkError):
                            e.attempts = attempt
                        raise

                    sleep_for = backoff_ms / 1000.0
                    log.info(
                        f"Retrying {operation}: attempt {attempt}/{attempts_max}, "
                        f"backoff {sleep_for:.3f}s"
                    )
                    await asyncio.sleep(sleep_for)
                    delay *= 2.0

        return wrapper
    return deco


def _log_retry_attempt(operation, attempt, max_retries, error, error_message, backoff_ms, will_retry):
    from core.event_schemas import RetryAttempt
    from core.logger_factory import AUDIT_LOG, log_event

    retry_event = RetryAttempt(
        operation=operation,
        attempt=attempt,
        max_retries=max_retries,
        error_class=error.__class__.__name__,
        error_message=error_message,
        backoff_ms=backoff_ms,
        will_retry=will_retry,
    )
    try:
        log_event(
            AUDIT_LOG(),
            "retry_attempt",
            level=logging.INFO if will_retry else logging.WARNING,
            **retry_event.model_dump(),
        )
    except OSError as log_error:
        # Log directory unavailable; the retry itself goes on
        log.debug(f"Failed to log retry_attempt event: {log_error}")
