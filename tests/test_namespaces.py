#!/usr/bin/env python3
"""
Tests for namespace enumeration
Covers caching, pagination caps, rate-limit retries, the execution budget
and partial results
"""

import asyncio
import unittest
import sys
import os

# Add parent directory to path to import the ci_analytics package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from ci_analytics.cache import ResultCache
from ci_analytics.errors import UpstreamAPIError, UpstreamTimeout, UpstreamUnreachable
from ci_analytics.gitlab_client import GitLabAPIClient
from ci_analytics.namespaces import (
    PARTIAL_CAP_MESSAGE,
    PARTIAL_ERROR_MESSAGE,
    PARTIAL_TIMEOUT_MESSAGE,
    NamespaceEnumerator,
    to_namespace,
)
from ci_analytics.retry import RetryPolicy
from fake_gitlab import (
    GITLAB_URL,
    TOKEN,
    FakeGitLab,
    RecordingSleep,
    json_response,
    paged_groups_handler,
)

GROUPS_PATH = '/api/v4/groups'


class NamespaceTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.gitlab = FakeGitLab().add_version()
        self.sleep = RecordingSleep()
        self.cache = ResultCache(ttl_seconds=600)

    def client_factory(self, gitlab_url, token):
        return GitLabAPIClient(gitlab_url, token, retry_policy=RetryPolicy(sleep=self.sleep),
                               transport=self.gitlab.transport())

    def make_enumerator(self, **kwargs):
        options = {'max_pages': 10, 'concurrency': 3, 'budget_sec': 25}
        options.update(kwargs)
        return NamespaceEnumerator(self.cache, self.client_factory, **options)


class TestToNamespace(unittest.TestCase):

    def test_full_path_falls_back_to_path(self):
        ns = to_namespace({'id': 3, 'name': 'Team', 'path': 'team'})
        self.assertEqual(ns, {'id': 3, 'name': 'Team', 'path': 'team', 'kind': 'group', 'full_path': 'team'})


class TestNamespaceCaching(NamespaceTestCase):
    """Test cache hits and forced refreshes"""

    async def test_cache_hit_makes_no_upstream_calls(self):
        self.cache.set(NamespaceEnumerator.cache_key(GITLAB_URL, TOKEN), [{'id': 1}])
        listing = await self.make_enumerator().list_namespaces(GITLAB_URL, TOKEN)
        self.assertTrue(listing.from_cache)
        self.assertTrue(listing.complete)
        self.assertEqual(listing.namespaces, [{'id': 1}])
        self.assertEqual(self.gitlab.requests, [])

    async def test_cache_key_uses_token_prefix(self):
        self.assertEqual(NamespaceEnumerator.cache_key(GITLAB_URL, 'glpat-abcdefgh'),
                         f"{GITLAB_URL}_glpat-ab")

    async def test_complete_fetch_is_cached_then_served(self):
        self.gitlab.add_handler(GROUPS_PATH, paged_groups_handler(total_pages=3))
        enumerator = self.make_enumerator()

        first = await enumerator.list_namespaces(GITLAB_URL + '/some/path', TOKEN)
        self.assertTrue(first.complete)
        self.assertFalse(first.from_cache)
        self.assertEqual(len(first.namespaces), 6)

        second = await enumerator.list_namespaces(GITLAB_URL, TOKEN)
        self.assertTrue(second.from_cache)
        self.assertEqual(len(self.gitlab.calls_to(GROUPS_PATH)), 3)

    async def test_force_refresh_refetches(self):
        self.cache.set(NamespaceEnumerator.cache_key(GITLAB_URL, TOKEN), [{'id': 1}])
        self.gitlab.add_handler(GROUPS_PATH, paged_groups_handler(total_pages=1))
        listing = await self.make_enumerator().list_namespaces(GITLAB_URL, TOKEN, force_refresh=True)
        self.assertFalse(listing.from_cache)
        self.assertEqual(len(listing.namespaces), 2)
        self.assertEqual(len(self.cache.get(NamespaceEnumerator.cache_key(GITLAB_URL, TOKEN))), 2)


class TestNamespacePagination(NamespaceTestCase):
    """Test page caps, retries and page failures"""

    async def test_page_cap_returns_incomplete(self):
        self.gitlab.add_handler(GROUPS_PATH, paged_groups_handler(total_pages=15))
        listing = await self.make_enumerator().list_namespaces(GITLAB_URL, TOKEN)

        self.assertFalse(listing.complete)
        self.assertEqual(listing.message, PARTIAL_CAP_MESSAGE)
        self.assertEqual(len(self.gitlab.calls_to(GROUPS_PATH)), 10)
        self.assertEqual(len(listing.namespaces), 20)
        # Incomplete listings are not cached
        self.assertIsNone(self.cache.get(NamespaceEnumerator.cache_key(GITLAB_URL, TOKEN)))

    async def test_rate_limited_page_is_retried(self):
        pages = paged_groups_handler(total_pages=3)
        limited = {'done': False}

        def handler(request):
            if request.url.params.get('page') == '2' and not limited['done']:
                limited['done'] = True
                return json_response({'message': 'Too Many Requests'}, status=429, headers={'Retry-After': '2'})
            return pages(request)

        self.gitlab.add_handler(GROUPS_PATH, handler)
        listing = await self.make_enumerator().list_namespaces(GITLAB_URL, TOKEN)

        self.assertTrue(listing.complete)
        self.assertEqual(len(listing.namespaces), 6)
        self.assertEqual(self.sleep.delays, [2.0])

    async def test_failed_later_page_gives_partial_error(self):
        self.gitlab.add_handler(GROUPS_PATH, paged_groups_handler(total_pages=4, failing_pages=(3,)))
        listing = await self.make_enumerator().list_namespaces(GITLAB_URL, TOKEN)

        self.assertFalse(listing.complete)
        self.assertEqual(listing.message, PARTIAL_ERROR_MESSAGE)
        self.assertIn('500', listing.error)
        self.assertEqual(len(listing.namespaces), 6)
        self.assertIsNone(self.cache.get(NamespaceEnumerator.cache_key(GITLAB_URL, TOKEN)))

    async def test_first_page_failure_propagates(self):
        self.gitlab.add(GROUPS_PATH, json_response({'message': '403 Forbidden'}, status=403))
        with self.assertRaises(UpstreamAPIError) as ctx:
            await self.make_enumerator().list_namespaces(GITLAB_URL, TOKEN)
        self.assertEqual(ctx.exception.status_code, 403)

    async def test_top_level_only_is_forwarded(self):
        self.gitlab.add_handler(GROUPS_PATH, paged_groups_handler(total_pages=1))
        await self.make_enumerator(top_level_only=True).list_namespaces(GITLAB_URL, TOKEN)
        self.assertEqual(self.gitlab.calls_to(GROUPS_PATH)[0].url.params['top_level_only'], 'true')


class TestNamespaceProbe(NamespaceTestCase):
    """Test the reachability probe"""

    async def test_failed_probe_skips_group_listing(self):
        self.gitlab.add('/api/v4/version', json_response({'message': '401 Unauthorized'}, status=401))
        self.gitlab.add_handler(GROUPS_PATH, paged_groups_handler(total_pages=1))
        with self.assertRaises(UpstreamUnreachable) as ctx:
            await self.make_enumerator().list_namespaces(GITLAB_URL, TOKEN)
        self.assertEqual(ctx.exception.to_dict()['error'], 'GitLab API is not accessible')
        self.assertEqual(ctx.exception.details, '401 Unauthorized')
        self.assertEqual(self.gitlab.calls_to(GROUPS_PATH), [])


class TestNamespaceBudget(NamespaceTestCase):
    """Test the execution budget and the background fetch that outlives it"""

    async def test_budget_expiry_returns_partial_then_caches_in_background(self):
        pages = paged_groups_handler(total_pages=2)

        async def handler(request):
            if request.url.params.get('page') == '2':
                await asyncio.sleep(0.3)
            return pages(request)

        self.gitlab.add_handler(GROUPS_PATH, handler)
        enumerator = self.make_enumerator(budget_sec=0.1)

        listing = await enumerator.list_namespaces(GITLAB_URL, TOKEN)
        self.assertFalse(listing.complete)
        self.assertEqual(listing.message, PARTIAL_TIMEOUT_MESSAGE)
        self.assertEqual(len(listing.namespaces), 2)

        await enumerator.drain()
        cached = self.cache.get(NamespaceEnumerator.cache_key(GITLAB_URL, TOKEN))
        self.assertEqual(len(cached), 4)

    async def test_budget_expiry_with_nothing_fetched_is_timeout(self):
        async def slow(request):
            await asyncio.sleep(0.3)
            return paged_groups_handler(total_pages=1)(request)

        self.gitlab.add_handler(GROUPS_PATH, slow)
        enumerator = self.make_enumerator()
        with self.assertRaises(UpstreamTimeout):
            await enumerator.list_namespaces(GITLAB_URL, TOKEN, execution_budget_sec=0.05)
        await enumerator.drain()


if __name__ == '__main__':
    unittest.main()
