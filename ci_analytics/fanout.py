#!/usr/bin/env python3
"""
Concurrency helpers for upstream fan-out

- gather_isolated(): map items through a fallible coroutine and collect one
  Outcome per item, so a single failure never rejects the whole batch
- Deadline: wall-clock execution budget checked at fan-out boundaries
"""

import asyncio
import logging
import time
from dataclasses import dataclass

from ci_analytics.errors import PartialFailure

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    """Result of one isolated fan-out item (exactly one of value/error is meaningful)"""

    item: object
    value: object = None
    error: Exception = None

    @property
    def ok(self):
        return self.error is None


async def gather_isolated(items, fn, concurrency=None, label='item'):
    """Run fn(item) for every item concurrently with per-item isolation

    Args:
        items: Iterable of inputs
        fn: Coroutine function taking one item
        concurrency: Optional cap on simultaneously running calls
            (None or 0 means unbounded)
        label: Name used in failure log lines

    Returns:
        list: One Outcome per item, in input order. Failed items carry a
            PartialFailure in error; nothing is raised.
    """
    items = list(items)
    semaphore = asyncio.Semaphore(concurrency) if concurrency else None

    async def run_one(item):
        try:
            if semaphore is None:
                value = await fn(item)
            else:
                async with semaphore:
                    value = await fn(item)
            return Outcome(item=item, value=value)
        except Exception as e:
            logger.warning(f"Failed to process {label} {item!r}: {e}")
            return Outcome(item=item, error=PartialFailure(item, e))

    return list(await asyncio.gather(*(run_one(item) for item in items)))


def successful_values(outcomes, drop_none=True):
    """Values of successful outcomes, optionally skipping None values"""
    return [o.value for o in outcomes if o.ok and not (drop_none and o.value is None)]


class Deadline:
    """Wall-clock execution budget

    Args:
        budget_sec: Seconds available from construction time
        clock: Monotonic clock callable (time.monotonic by default)
    """

    def __init__(self, budget_sec, clock=time.monotonic):
        self.clock = clock
        self.budget_sec = budget_sec
        self.started_at = clock()
        self.expires_at = self.started_at + budget_sec

    def remaining(self):
        return max(0.0, self.expires_at - self.clock())

    def expired(self):
        return self.clock() >= self.expires_at

    def elapsed_ms(self):
        return (self.clock() - self.started_at) * 1000
