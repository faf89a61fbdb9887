#!/usr/bin/env python3
"""
Tests for GitLabAPIClient
Covers auth headers, URL normalization, failure classification and
pagination header parsing against an httpx.MockTransport
"""

import unittest
import sys
import os

import httpx

# Add parent directory to path to import the ci_analytics package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from ci_analytics.errors import UpstreamAPIError, UpstreamTimeout, UpstreamUnreachable, ValidationError
from ci_analytics.gitlab_client import GitLabAPIClient, build_auth_headers, mask_token, normalize_gitlab_url
from ci_analytics.retry import RetryPolicy
from fake_gitlab import GITLAB_URL, TOKEN, FakeGitLab, RecordingSleep, json_response


class TestHelpers(unittest.TestCase):
    """Test module-level helpers"""

    def test_normalize_strips_path_and_query(self):
        self.assertEqual(normalize_gitlab_url('https://gitlab.example.com/group/project?x=1'),
                         'https://gitlab.example.com')
        self.assertEqual(normalize_gitlab_url('  http://localhost:8080/  '), 'http://localhost:8080')

    def test_normalize_rejects_bad_urls(self):
        for bad in (None, '', 'gitlab.example.com', 'ftp://gitlab.example.com', 'https://'):
            with self.subTest(url=bad):
                with self.assertRaises(ValidationError) as ctx:
                    normalize_gitlab_url(bad)
                self.assertEqual(ctx.exception.field, 'gitlabUrl')

    def test_auth_headers(self):
        self.assertEqual(build_auth_headers('abc', 'pat'), {'PRIVATE-TOKEN': 'abc'})
        self.assertEqual(build_auth_headers('abc', 'oauth'), {'Authorization': 'Bearer abc'})

    def test_mask_token(self):
        self.assertEqual(mask_token('glpat-secret'), 'glpa***')
        self.assertEqual(mask_token(None), 'NOT SET')


class ClientTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.gitlab = FakeGitLab()
        self.sleep = RecordingSleep()
        self.client = self.make_client()

    async def asyncTearDown(self):
        await self.client.aclose()

    def make_client(self, auth_method='pat', max_retries=3):
        policy = RetryPolicy(max_retries=max_retries, sleep=self.sleep)
        return GitLabAPIClient(GITLAB_URL, TOKEN, auth_method=auth_method, retry_policy=policy,
                               transport=self.gitlab.transport())


class TestRequests(ClientTestCase):
    """Test request construction"""

    async def test_pat_header_and_base_path(self):
        self.gitlab.add_version()
        version = await self.client.get_version()
        self.assertEqual(version['version'], '16.8.0')
        request = self.gitlab.requests[0]
        self.assertEqual(request.url.path, '/api/v4/version')
        self.assertEqual(request.headers['PRIVATE-TOKEN'], TOKEN)
        self.assertNotIn('Authorization', request.headers)

    async def test_oauth_uses_bearer(self):
        await self.client.aclose()
        self.client = self.make_client(auth_method='oauth')
        self.gitlab.add_version()
        await self.client.get_version()
        self.assertEqual(self.gitlab.requests[0].headers['Authorization'], f"Bearer {TOKEN}")

    async def test_groups_page_params_and_pagination_headers(self):
        self.gitlab.add('/api/v4/groups', json_response(
            [{'id': 1, 'name': 'A'}], headers={'X-Total-Pages': '4', 'X-Total': '310'}))
        result = await self.client.get_groups_page(2, per_page=500)
        self.assertEqual(result, {'groups': [{'id': 1, 'name': 'A'}], 'total_pages': 4, 'total': 310})
        params = self.gitlab.requests[0].url.params
        self.assertEqual(params['min_access_level'], '20')
        self.assertEqual(params['per_page'], '100')
        self.assertEqual(params['page'], '2')
        self.assertEqual(params['simple'], 'true')
        self.assertNotIn('top_level_only', params)

    async def test_request_result_shape(self):
        self.gitlab.add('/api/v4/groups', json_response(
            [], headers={'X-Total-Pages': '1', 'X-Total': '0', 'X-Next-Page': ''}))
        result = await self.client.request('groups')
        self.assertEqual(result, {'data': [], 'total_pages': 1, 'total': 0})

    async def test_missing_pagination_headers_are_none(self):
        self.gitlab.add('/api/v4/groups', json_response([]))
        result = await self.client.get_groups_page(1)
        self.assertIsNone(result['total_pages'])
        self.assertIsNone(result['total'])

    async def test_projects_filtered_by_namespace(self):
        self.gitlab.add('/api/v4/projects', json_response([{'id': 7}]))
        projects = await self.client.get_projects(namespace='org/team')
        self.assertEqual(projects, [{'id': 7}])
        params = self.gitlab.requests[0].url.params
        self.assertEqual(params['namespace'], 'org/team')
        self.assertEqual(params['membership'], 'true')

    async def test_non_list_payload_coerced_to_empty(self):
        self.gitlab.add('/api/v4/projects/7/pipelines', json_response({'unexpected': True}))
        self.assertEqual(await self.client.get_pipelines(7), [])

    async def test_wrapped_projects_payload_unwrapped(self):
        self.gitlab.add('/api/v4/projects', json_response({'projects': [{'id': 1}]}))
        self.assertEqual(await self.client.get_projects(), [{'id': 1}])


class TestFailureClassification(ClientTestCase):
    """Test how transport and HTTP failures map to error types"""

    async def test_404_is_api_error_with_upstream_message(self):
        self.gitlab.add('/api/v4/projects/99', json_response({'message': '404 Project Not Found'}, status=404))
        with self.assertRaises(UpstreamAPIError) as ctx:
            await self.client.get_project(99)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.message, '404 Project Not Found')
        self.assertEqual(len(self.gitlab.requests), 1)

    async def test_429_retry_after_then_success(self):
        self.gitlab.add(
            '/api/v4/projects',
            json_response({'message': 'Too Many Requests'}, status=429, headers={'Retry-After': '2'}),
            json_response([{'id': 1}]),
        )
        self.assertEqual(await self.client.get_projects(), [{'id': 1}])
        self.assertEqual(self.sleep.delays, [2.0])

    async def test_5xx_exhausts_retries(self):
        self.gitlab.add('/api/v4/projects', json_response({'message': 'down'}, status=502))
        with self.assertRaises(UpstreamAPIError) as ctx:
            await self.client.get_projects()
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertEqual(len(self.gitlab.requests), 3)

    async def test_connect_error_is_unreachable(self):
        def refuse(request):
            raise httpx.ConnectError('Connection refused', request=request)

        self.gitlab.add_handler('/api/v4/version', refuse)
        with self.assertRaises(UpstreamUnreachable):
            await self.client.get_version()
        # Probe is single attempt
        self.assertEqual(len(self.gitlab.requests), 1)

    async def test_read_timeout_is_timeout(self):
        def slow(request):
            raise httpx.ReadTimeout('timed out', request=request)

        self.gitlab.add_handler('/api/v4/projects/1', slow)
        with self.assertRaises(UpstreamTimeout):
            await self.client.get_project(1)

    async def test_malformed_json_is_api_error(self):
        self.gitlab.add('/api/v4/projects/1', httpx.Response(200, text='<html>proxy error</html>'))
        with self.assertRaises(UpstreamAPIError) as ctx:
            await self.client.get_project(1)
        self.assertIsNone(ctx.exception.status_code)
        self.assertEqual(ctx.exception.http_status, 502)

    async def test_pipeline_payload_must_be_object(self):
        self.gitlab.add('/api/v4/projects/1/pipelines/5', json_response([]))
        with self.assertRaises(UpstreamAPIError):
            await self.client.get_pipeline(1, 5)


if __name__ == '__main__':
    unittest.main()
