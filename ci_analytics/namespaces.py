#!/usr/bin/env python3
"""
Namespace (group) enumeration for the selection UI

Fetches every group the token can read at Reporter level or above:
1. Serve from the ResultCache when a valid entry exists (unless forced)
2. Probe /version so an unreachable instance fails fast
3. Fetch page 1, read X-Total-Pages, then fetch the remaining pages in
   bounded-concurrency batches up to max_pages
4. Race the whole fetch against a wall-clock budget and return the partial
   buffer (complete=False) if the budget runs out first

The fetch task is shielded from the budget race: when partial results are
returned it keeps running on the event loop and caches the full list for the
next request.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ci_analytics.cache import ResultCache
from ci_analytics.errors import DashboardError, UpstreamTimeout, UpstreamUnreachable
from ci_analytics.fanout import Deadline, gather_isolated
from ci_analytics.gitlab_client import MAX_PER_PAGE, normalize_gitlab_url

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 10           # Cap on group pages per request
DEFAULT_PAGE_CONCURRENCY = 3     # Pages fetched in parallel per batch
DEFAULT_EXECUTION_BUDGET = 25    # Seconds before partial results are returned

PARTIAL_TIMEOUT_MESSAGE = 'Partial results returned due to timeout'
PARTIAL_ERROR_MESSAGE = 'Partial results returned due to error'
PARTIAL_CAP_MESSAGE = 'Partial results returned due to page limit'


def _utc_now_iso():
    return datetime.now(timezone.utc).isoformat()


def to_namespace(group):
    """Reduce a GitLab group payload to the Namespace shape used by the UI"""
    return {
        'id': group.get('id'),
        'name': group.get('name'),
        'path': group.get('path'),
        'kind': 'group',
        'full_path': group.get('full_path') or group.get('path'),
    }


@dataclass
class NamespaceListing:
    namespaces: list
    complete: bool
    from_cache: bool
    timestamp: str
    message: str = None
    error: str = None

    def to_dict(self):
        body = {
            'namespaces': self.namespaces,
            'fromCache': self.from_cache,
            'complete': self.complete,
            'timestamp': self.timestamp,
        }
        if self.message:
            body['message'] = self.message
        if self.error:
            body['error'] = self.error
        return body


@dataclass
class PartialBuffer:
    """Append-only namespace buffer owned by a single request"""

    namespaces: list = field(default_factory=list)
    pages_fetched: int = 0
    failed_pages: list = field(default_factory=list)

    def add_page(self, groups):
        self.namespaces.extend(to_namespace(g) for g in groups if isinstance(g, dict))
        self.pages_fetched += 1

    def snapshot(self):
        return list(self.namespaces)


class NamespaceEnumerator:
    """Cached, paginated, budget-bounded group listing

    Args:
        cache: Shared ResultCache
        client_factory: Callable(gitlab_url, token) returning an async
            context manager yielding a GitLabAPIClient
        page_size: Groups per page (capped at 100)
        max_pages: Maximum number of pages fetched per request
        concurrency: Pages fetched concurrently per batch
        budget_sec: Default wall-clock budget per request
        simple: Request the lightweight group representation
        top_level_only: Only list top-level groups
        clock: Monotonic clock used for the budget
    """

    def __init__(self, cache, client_factory, page_size=MAX_PER_PAGE, max_pages=DEFAULT_MAX_PAGES,
                 concurrency=DEFAULT_PAGE_CONCURRENCY, budget_sec=DEFAULT_EXECUTION_BUDGET,
                 simple=True, top_level_only=False, clock=time.monotonic):
        self.cache = cache if cache is not None else ResultCache()
        self.client_factory = client_factory
        self.page_size = min(page_size, MAX_PER_PAGE)
        self.max_pages = max(1, max_pages)
        self.concurrency = max(1, concurrency)
        self.budget_sec = budget_sec
        self.simple = simple
        self.top_level_only = top_level_only
        self.clock = clock
        self._inflight = set()

    @staticmethod
    def cache_key(gitlab_url, token):
        return f"{gitlab_url}_{token[:8]}"

    async def list_namespaces(self, gitlab_url, token, force_refresh=False, execution_budget_sec=None):
        """Return the caller's groups as a NamespaceListing

        Raises:
            ValidationError: bad URL
            UpstreamUnreachable: reachability probe failed
            UpstreamAPIError / UpstreamTimeout: page 1 failed, or the budget
                ran out before any page arrived
        """
        url = normalize_gitlab_url(gitlab_url)
        key = self.cache_key(url, token)

        entry = self.cache.get_entry(key, force_refresh=force_refresh)
        if entry is not None:
            logger.info(f"Using cached namespaces ({len(entry.data)} groups)")
            return NamespaceListing(
                namespaces=entry.data,
                complete=True,
                from_cache=True,
                timestamp=entry.timestamp_iso,
            )

        budget = self.budget_sec if execution_budget_sec is None else execution_budget_sec
        deadline = Deadline(budget, clock=self.clock)
        buffer = PartialBuffer()

        task = asyncio.ensure_future(self._fetch_all(url, token, key, buffer, deadline))
        self._inflight.add(task)
        task.add_done_callback(self._on_fetch_done)

        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=deadline.remaining())
        except asyncio.TimeoutError:
            partial = buffer.snapshot()
            if not partial:
                logger.error(f"Namespace fetch exceeded {budget}s budget with no results")
                raise UpstreamTimeout(
                    'The GitLab server is taking too long to respond',
                    details=f"No groups received within {budget}s",
                    suggestion='Try again later or check your GitLab instance',
                )
            logger.warning(f"Returning partial results after {deadline.elapsed_ms():.0f}ms ({len(partial)} groups)")
            return NamespaceListing(
                namespaces=partial,
                complete=False,
                from_cache=False,
                timestamp=_utc_now_iso(),
                message=PARTIAL_TIMEOUT_MESSAGE,
            )

    def _on_fetch_done(self, task):
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Also reached when the request already returned partial results
            logger.debug(f"Namespace fetch task finished with error: {exc}")

    async def drain(self):
        """Wait for background fetches that outlived their request"""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _probe(self, client):
        try:
            version = await client.get_version()
        except DashboardError as e:
            logger.error(f"GitLab version check failed: {e}")
            raise UpstreamUnreachable('GitLab API is not accessible', details=e.message) from e
        logger.info(f"GitLab version: {version.get('version', 'unknown')}")
        return version

    async def _fetch_all(self, url, token, key, buffer, deadline):
        async with self.client_factory(url, token) as client:
            await self._probe(client)

            logger.info("Fetching first page of groups...")
            first = await client.get_groups_page(
                1, per_page=self.page_size, simple=self.simple, top_level_only=self.top_level_only,
            )
            buffer.add_page(first['groups'])
            total_pages = first['total_pages'] or 1
            total = first['total'] if first['total'] is not None else len(first['groups'])
            logger.info(f"Found {total} total groups across {total_pages} pages")

            complete = True
            message = None
            error = None
            last_page = min(total_pages, self.max_pages)
            if total_pages > self.max_pages:
                logger.warning(f"{total_pages} pages of groups exceed the cap of {self.max_pages}; "
                               f"returning the first {self.max_pages}")
                complete = False
                message = PARTIAL_CAP_MESSAGE

            remaining = list(range(2, last_page + 1))
            batches = [remaining[i:i + self.concurrency] for i in range(0, len(remaining), self.concurrency)]

            async def fetch_page(page):
                result = await client.get_groups_page(
                    page, per_page=self.page_size, simple=self.simple, top_level_only=self.top_level_only,
                )
                buffer.add_page(result['groups'])
                logger.info(f"Fetched page {page} with {len(result['groups'])} groups")
                return len(result['groups'])

            for batch in batches:
                if deadline.expired():
                    logger.warning(f"Execution budget exhausted before pages {batch}; stopping")
                    complete = False
                    message = PARTIAL_TIMEOUT_MESSAGE
                    break
                outcomes = await gather_isolated(batch, fetch_page, label='groups page')
                for outcome in outcomes:
                    if not outcome.ok:
                        buffer.failed_pages.append(outcome.item)
                        complete = False
                        message = PARTIAL_ERROR_MESSAGE
                        error = str(outcome.error.cause)

        namespaces = buffer.snapshot()
        logger.info(f"Fetched {len(namespaces)} groups in {deadline.elapsed_ms():.0f}ms "
                    f"({buffer.pages_fetched} pages, {len(buffer.failed_pages)} failed)")
        if complete:
            self.cache.set(key, namespaces)
        return NamespaceListing(
            namespaces=namespaces,
            complete=complete,
            from_cache=False,
            timestamp=_utc_now_iso(),
            message=message,
            error=error,
        )
