#!/usr/bin/env python3
"""
GitLab API Client Module for GitLab CI Analytics

Handles all GitLab API interactions including:
- Authenticated async requests (PRIVATE-TOKEN or Bearer header)
- Per-endpoint timeouts and classification of failures
- Retry and rate limiting through the shared RetryPolicy
- Pagination headers (X-Total-Pages, X-Total)
"""

import logging
import ssl
import time
from urllib.parse import urlparse

import httpx

from ci_analytics.errors import (
    UpstreamAPIError,
    UpstreamTimeout,
    UpstreamUnreachable,
    ValidationError,
)
from ci_analytics.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Timeouts by endpoint criticality (seconds)
DEFAULT_REQUEST_TIMEOUT = 10     # Projects, pipelines, jobs
DEFAULT_PROBE_TIMEOUT = 5        # /version reachability check
DEFAULT_GROUPS_TIMEOUT = 25      # Group listing tolerates slow instances

MAX_PER_PAGE = 100               # GitLab's hard per_page limit
REPORTER_ACCESS_LEVEL = 20       # min_access_level for group listing

AUTH_METHOD_PAT = 'pat'
AUTH_METHOD_OAUTH = 'oauth'


def normalize_gitlab_url(url):
    """Reduce a user-supplied GitLab URL to {scheme}://{host[:port]}

    Raises:
        ValidationError: URL is empty or does not use http/https
    """
    if not url or not isinstance(url, str):
        raise ValidationError('Valid GitLab URL is required', field='gitlabUrl')
    cleaned = url.strip()
    if not cleaned.startswith('http'):
        raise ValidationError('GitLab URL must start with http:// or https://', field='gitlabUrl')
    parsed = urlparse(cleaned)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValidationError('GitLab URL must start with http:// or https://', field='gitlabUrl')
    return f"{parsed.scheme}://{parsed.netloc}"


def build_auth_headers(token, auth_method=AUTH_METHOD_PAT):
    """Header dict for a token: PRIVATE-TOKEN for PATs, Bearer for OAuth tokens"""
    if auth_method == AUTH_METHOD_OAUTH:
        return {'Authorization': f"Bearer {token}"}
    return {'PRIVATE-TOKEN': token}


def mask_token(token):
    if not token:
        return 'NOT SET'
    return f"{token[:4]}***"


def _header_int(headers, name):
    value = headers.get(name)
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring non-numeric {name} header: {value!r}")
        return None


def _parse_retry_after(value):
    """Seconds from a Retry-After header, or None if missing/invalid"""
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid Retry-After header: {value!r}. Using exponential backoff")
        return None
    return seconds if seconds >= 0 else None


def _extract_error_message(response):
    """GitLab puts error text under 'message' or 'error'; fall back to the reason phrase"""
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict):
        message = payload.get('message') or payload.get('error') or payload.get('error_description')
        if message:
            return message if isinstance(message, str) else str(message)
    return response.reason_phrase


def _ensure_list(data, endpoint, wrapper_key=None):
    """Coerce a response body that should be a list; never raise"""
    if isinstance(data, list):
        return data
    if wrapper_key and isinstance(data, dict) and isinstance(data.get(wrapper_key), list):
        return data[wrapper_key]
    logger.warning(f"Expected a list from {endpoint}, got {type(data).__name__}. Using empty list")
    return []


class GitLabAPIClient:
    """Async GitLab API client

    Use as an async context manager so the underlying httpx connection pool
    is closed:

        async with GitLabAPIClient(url, token) as client:
            version = await client.get_version()

    Args:
        gitlab_url: GitLab base URL (normalized to scheme://host)
        api_token: Personal access token (or OAuth bearer token)
        auth_method: 'pat' (default) or 'oauth'
        retry_policy: RetryPolicy applied to every retryable call
        timeout: Default per-call timeout in seconds
        probe_timeout: Timeout for the /version reachability probe
        groups_timeout: Timeout for group listing pages
        insecure_skip_verify: Disable TLS verification (trusted networks only)
        ca_bundle_path: Custom CA bundle for internal GitLab instances
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(self, gitlab_url, api_token, auth_method=AUTH_METHOD_PAT, retry_policy=None,
                 timeout=DEFAULT_REQUEST_TIMEOUT, probe_timeout=DEFAULT_PROBE_TIMEOUT,
                 groups_timeout=DEFAULT_GROUPS_TIMEOUT, insecure_skip_verify=False,
                 ca_bundle_path=None, transport=None):
        self.gitlab_url = normalize_gitlab_url(gitlab_url)
        self.base_url = f"{self.gitlab_url}/api/v4"
        self.api_token = api_token
        self.auth_method = auth_method
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self.groups_timeout = groups_timeout

        headers = build_auth_headers(api_token, auth_method)
        headers['Accept'] = 'application/json'
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            verify=self._build_verify(insecure_skip_verify, ca_bundle_path),
            transport=transport,
        )

    @staticmethod
    def _build_verify(insecure_skip_verify, ca_bundle_path):
        if ca_bundle_path:
            try:
                logger.info(f"Using custom CA bundle: {ca_bundle_path}")
                return ssl.create_default_context(cafile=ca_bundle_path)
            except (ssl.SSLError, OSError) as e:
                logger.error(f"Failed to load CA bundle {ca_bundle_path}: {e}. Falling back to default SSL verification")
                return True
        if insecure_skip_verify:
            logger.warning("SSL VERIFICATION DISABLED - only use this on trusted internal networks")
            return False
        return True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        await self._http.aclose()

    async def _send(self, endpoint, params=None, timeout=None):
        """Perform one GET and classify the outcome

        Returns:
            dict: {'data', 'total_pages', 'total'}

        Raises:
            UpstreamTimeout: the server was reached but did not answer in time
            UpstreamUnreachable: no response (DNS, refused connection, reset)
            UpstreamAPIError: non-2xx status or undecodable JSON body
        """
        start_time = time.monotonic()
        try:
            response = await self._http.get(endpoint, params=params, timeout=timeout or self.timeout)
        except httpx.ConnectTimeout as e:
            elapsed_ms = (time.monotonic() - start_time) * 1000
            logger.warning(f"GET {endpoint} -> connect timeout in {elapsed_ms:.1f}ms")
            raise UpstreamUnreachable(f"No response from {self.gitlab_url}", details=str(e) or 'Connect timeout') from e
        except httpx.TimeoutException as e:
            elapsed_ms = (time.monotonic() - start_time) * 1000
            logger.warning(f"GET {endpoint} -> timeout in {elapsed_ms:.1f}ms")
            raise UpstreamTimeout(
                'The GitLab server is taking too long to respond',
                details=f"GET {endpoint} exceeded {timeout or self.timeout}s",
            ) from e
        except httpx.TransportError as e:
            elapsed_ms = (time.monotonic() - start_time) * 1000
            logger.warning(f"GET {endpoint} -> {type(e).__name__} in {elapsed_ms:.1f}ms: {e}")
            raise UpstreamUnreachable(f"No response from {self.gitlab_url}", details=str(e) or type(e).__name__) from e

        elapsed_ms = (time.monotonic() - start_time) * 1000
        if not response.is_success:
            message = _extract_error_message(response)
            retry_after = None
            if response.status_code == 429:
                retry_after = _parse_retry_after(response.headers.get('Retry-After'))
                logger.warning(f"GET {endpoint} -> 429 in {elapsed_ms:.1f}ms - Rate limited (Retry-After: {retry_after})")
            else:
                logger.warning(f"GET {endpoint} -> {response.status_code} in {elapsed_ms:.1f}ms: {message}")
            raise UpstreamAPIError(message, status_code=response.status_code, retry_after=retry_after)

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"GET {endpoint} -> {response.status_code} with invalid JSON body: {e}")
            raise UpstreamAPIError('GitLab returned a malformed response', details=str(e)) from e

        logger.debug(f"GET {endpoint} -> {response.status_code} in {elapsed_ms:.1f}ms")
        headers = response.headers
        return {
            'data': data,
            'total_pages': _header_int(headers, 'X-Total-Pages'),
            'total': _header_int(headers, 'X-Total'),
        }

    async def request(self, endpoint, params=None, timeout=None, retry=True):
        """GET an API endpoint (relative to /api/v4), retrying per policy"""
        if not retry:
            return await self._send(endpoint, params=params, timeout=timeout)
        return await self.retry_policy.run(
            lambda: self._send(endpoint, params=params, timeout=timeout),
            description=f"GET {endpoint}",
        )

    async def get_version(self):
        """Cheap reachability probe: single attempt, short timeout"""
        result = await self.request('version', timeout=self.probe_timeout, retry=False)
        data = result['data']
        return data if isinstance(data, dict) else {}

    async def get_groups_page(self, page, per_page=MAX_PER_PAGE, simple=True, top_level_only=False, retry=True):
        """One page of groups the caller can access at Reporter level or above

        Returns:
            dict: {'groups': list, 'total_pages': int|None, 'total': int|None}
        """
        params = {
            'min_access_level': REPORTER_ACCESS_LEVEL,
            'per_page': min(per_page, MAX_PER_PAGE),
            'page': page,
        }
        if simple:
            params['simple'] = 'true'
        if top_level_only:
            params['top_level_only'] = 'true'
        result = await self.request('groups', params=params, timeout=self.groups_timeout, retry=retry)
        return {
            'groups': _ensure_list(result['data'], 'groups'),
            'total_pages': result['total_pages'],
            'total': result['total'],
        }

    async def get_projects(self, namespace=None, per_page=MAX_PER_PAGE):
        """Projects the caller is a member of, optionally filtered by namespace"""
        params = {'membership': 'true', 'per_page': min(per_page, MAX_PER_PAGE)}
        if namespace:
            params['namespace'] = namespace
        result = await self.request('projects', params=params)
        return _ensure_list(result['data'], 'projects', wrapper_key='projects')

    async def get_project(self, project_id):
        result = await self.request(f"projects/{project_id}")
        data = result['data']
        return data if isinstance(data, dict) else {}

    async def get_pipelines(self, project_id, updated_after=None, updated_before=None, per_page=MAX_PER_PAGE):
        """Pipelines of a project updated inside [updated_after, updated_before]"""
        params = {'per_page': min(per_page, MAX_PER_PAGE)}
        if updated_after:
            params['updated_after'] = updated_after
        if updated_before:
            params['updated_before'] = updated_before
        result = await self.request(f"projects/{project_id}/pipelines", params=params)
        return _ensure_list(result['data'], f"projects/{project_id}/pipelines")

    async def get_pipeline(self, project_id, pipeline_id):
        result = await self.request(f"projects/{project_id}/pipelines/{pipeline_id}")
        data = result['data']
        if not isinstance(data, dict):
            raise UpstreamAPIError(f"Unexpected pipeline payload for {pipeline_id}")
        return data

    async def get_pipeline_jobs(self, project_id, pipeline_id):
        result = await self.request(
            f"projects/{project_id}/pipelines/{pipeline_id}/jobs",
            params={'per_page': MAX_PER_PAGE},
        )
        return _ensure_list(result['data'], f"projects/{project_id}/pipelines/{pipeline_id}/jobs")
