#!/usr/bin/env python3
"""
Retry/backoff policy for GitLab API calls

This is the single retry implementation used by every upstream call site
(namespace pages, projects, pipelines, jobs). Handles:
- Exponential backoff capped at max_delay
- Rate limiting (429) honoring the server's Retry-After value
- A retry predicate so validation and 4xx errors fail immediately
"""

import asyncio
import logging

from ci_analytics.errors import UpstreamAPIError, UpstreamTimeout, UpstreamUnreachable

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
DEFAULT_BACKOFF_FACTOR = 2.0


def is_retryable_error(exc):
    """Default retry predicate

    Retries timeouts, connection failures, 429 and 5xx responses. Everything
    else (validation errors, 401/403/404, programming errors) is final.
    """
    if isinstance(exc, (UpstreamTimeout, UpstreamUnreachable)):
        return True
    if isinstance(exc, UpstreamAPIError):
        return exc.is_transient
    return False


class RetryPolicy:
    """Bounded retry with exponential backoff

    Args:
        max_retries: Total number of attempts (1 disables retrying)
        initial_delay: Delay in seconds after the first failure
        max_delay: Upper bound for the computed backoff delay
        backoff_factor: Multiplier applied per attempt
        retry_predicate: Callable(exc) -> bool deciding if exc is retryable
        sleep: Coroutine function used to wait (asyncio.sleep by default)
    """

    def __init__(self, max_retries=DEFAULT_MAX_RETRIES, initial_delay=DEFAULT_INITIAL_DELAY,
                 max_delay=DEFAULT_MAX_DELAY, backoff_factor=DEFAULT_BACKOFF_FACTOR,
                 retry_predicate=is_retryable_error, sleep=asyncio.sleep):
        self.max_retries = max(1, int(max_retries))
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.retry_predicate = retry_predicate
        self.sleep = sleep

    @classmethod
    def no_retry(cls):
        """Single-attempt policy (used for fail-fast reachability probes)"""
        return cls(max_retries=1)

    @classmethod
    def from_config(cls, config, sleep=asyncio.sleep):
        return cls(
            max_retries=config.get('max_retries', DEFAULT_MAX_RETRIES),
            initial_delay=config.get('initial_retry_delay', DEFAULT_INITIAL_DELAY),
            max_delay=config.get('max_retry_delay', DEFAULT_MAX_DELAY),
            sleep=sleep,
        )

    def compute_delay(self, attempt, exc=None):
        """Delay before retrying after a failed attempt (0-based)

        A Retry-After value carried by a rate-limit error replaces the
        computed backoff.
        """
        retry_after = getattr(exc, 'retry_after', None)
        if retry_after is not None and retry_after >= 0:
            return retry_after
        return min(self.initial_delay * (self.backoff_factor ** attempt), self.max_delay)

    async def run(self, operation, description='operation'):
        """Await operation() until it succeeds or the policy gives up

        Args:
            operation: Zero-argument coroutine function
            description: Label used in log messages

        Returns:
            The operation's result

        Raises:
            The last exception once it is not retryable or attempts run out
        """
        for attempt in range(self.max_retries):
            try:
                return await operation()
            except Exception as e:
                if not self.retry_predicate(e):
                    raise
                if attempt >= self.max_retries - 1:
                    logger.error(f"{description} failed after {self.max_retries} attempts: {e}")
                    raise
                delay = self.compute_delay(attempt, e)
                if getattr(e, 'is_rate_limited', False):
                    logger.warning(f"{description} rate limited. Waiting {delay}s before retry "
                                   f"(attempt {attempt + 1}/{self.max_retries})")
                else:
                    logger.warning(f"{description} failed: {e}. Retrying in {delay}s "
                                   f"(attempt {attempt + 1}/{self.max_retries})")
                await self.sleep(delay)


async def with_retry(operation, policy=None, description='operation'):
    """Run operation under policy (the default policy when None)"""
    policy = policy or RetryPolicy()
    return await policy.run(operation, description=description)
