#!/usr/bin/env python3
"""
Request services for GitLab CI Analytics

Each public coroutine takes the decoded request (JSON body or query dict),
validates it before any network call, runs the async pipeline and returns an
(http_status, payload) pair. HTTP plumbing lives in app.py; nothing here
knows about sockets or headers.
"""

import logging
from datetime import datetime, timezone

from ci_analytics.cache import ResultCache
from ci_analytics.config_loader import parse_bool_config
from ci_analytics.date_range import calculate_date_range, normalize_time_range
from ci_analytics.errors import (
    DashboardError,
    NoDataFound,
    UpstreamAPIError,
    ValidationError,
    error_response,
)
from ci_analytics.gitlab_client import AUTH_METHOD_PAT, GitLabAPIClient, mask_token, normalize_gitlab_url
from ci_analytics.metrics import process_ci_metrics
from ci_analytics.namespaces import NamespaceEnumerator
from ci_analytics.pipelines import fetch_pipelines_for_projects, fetch_projects
from ci_analytics.retry import RetryPolicy

logger = logging.getLogger(__name__)

MISSING_NAMESPACE_PARAMS = 'Missing required parameters: gitlabUrl, personalAccessToken'


def _utc_now_iso():
    return datetime.now(timezone.utc).isoformat()


def _require_string(body, key, message):
    value = body.get(key)
    if not value or not isinstance(value, str) or not value.strip():
        raise ValidationError(message, field=key)
    return value.strip()


def _require_body(body):
    if not isinstance(body, dict):
        raise ValidationError('Request body must be a JSON object')
    return body


class DashboardServices:
    """Entry points behind the HTTP routes

    Args:
        config: Dict from config_loader.load_config()
        cache: Process-wide ResultCache (created from cache_ttl_sec if None)
        retry_policy: RetryPolicy shared by all upstream calls
        transport: Optional httpx transport handed to every client (tests)
    """

    def __init__(self, config, cache=None, retry_policy=None, transport=None):
        self.config = config
        self.cache = cache if cache is not None else ResultCache(ttl_seconds=config.get('cache_ttl_sec', 600))
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)
        self.transport = transport
        self.namespace_enumerator = NamespaceEnumerator(
            cache=self.cache,
            client_factory=self.make_client,
            page_size=config.get('namespace_page_size', 100),
            max_pages=config.get('namespace_max_pages', 10),
            concurrency=config.get('namespace_concurrency', 3),
            budget_sec=config.get('namespace_budget_sec', 25),
            top_level_only=config.get('namespace_top_level_only', False),
        )

    def make_client(self, gitlab_url, token, auth_method=AUTH_METHOD_PAT):
        return GitLabAPIClient(
            gitlab_url,
            token,
            auth_method=auth_method,
            retry_policy=self.retry_policy,
            timeout=self.config.get('request_timeout_sec', 10),
            probe_timeout=self.config.get('probe_timeout_sec', 5),
            groups_timeout=self.config.get('namespace_timeout_sec', 25),
            insecure_skip_verify=self.config.get('insecure_skip_verify', False),
            ca_bundle_path=self.config.get('ca_bundle_path'),
            transport=self.transport,
        )

    async def fetch_namespaces(self, body):
        """POST /api/gitlab/fetch-namespaces

        Returns 200 for a complete listing, 206 for partial results.
        """
        try:
            body = _require_body(body)
            gitlab_url = _require_string(body, 'gitlabUrl', MISSING_NAMESPACE_PARAMS)
            token = _require_string(body, 'personalAccessToken', MISSING_NAMESPACE_PARAMS)
            auth_method = body.get('authMethod', AUTH_METHOD_PAT)
            if auth_method != AUTH_METHOD_PAT:
                raise ValidationError('Only Personal Access Token authentication is supported', field='authMethod')
            force_refresh = parse_bool_config(body.get('forceRefresh'), False, 'forceRefresh')

            logger.info(f"Fetching namespaces from {gitlab_url} (token={mask_token(token)}, force_refresh={force_refresh})")
            listing = await self.namespace_enumerator.list_namespaces(
                gitlab_url, token, force_refresh=force_refresh,
            )
        except DashboardError as e:
            logger.error(f"fetch-namespaces failed: {e}")
            return error_response(e)
        except Exception as e:
            logger.exception(f"Unexpected error in fetch-namespaces: {e}")
            return 500, {'error': 'Failed to fetch groups', 'details': str(e)}

        status = 200 if listing.complete else 206
        return status, listing.to_dict()

    async def fetch_ci_metrics(self, body):
        """POST /api/gitlab/fetch-ci-metrics

        Returns the MetricsResult dict, 404 when the namespace has no projects.
        """
        try:
            body = _require_body(body)
            gitlab_url = normalize_gitlab_url(body.get('gitlabUrl'))
            if body.get('authMethod') != AUTH_METHOD_PAT:
                raise ValidationError('Only Personal Access Token authentication is supported', field='authMethod')
            token = _require_string(body, 'personalAccessToken', 'Valid Personal Access Token is required')
            namespace = _require_string(body, 'namespace', 'Valid namespace is required')
            time_range = normalize_time_range(body.get('timeRange'))

            date_range = calculate_date_range(time_range)
            logger.info(f"CI metrics for namespace={namespace} range={time_range} "
                        f"({date_range.to_dict()['startDate']} to {date_range.to_dict()['endDate']}) "
                        f"token={mask_token(token)}")

            concurrency = self.config.get('pipeline_concurrency') or None
            async with self.make_client(gitlab_url, token) as client:
                projects = await fetch_projects(client, namespace)
                if not projects:
                    raise NoDataFound('No projects found')
                bundles = await fetch_pipelines_for_projects(client, projects, date_range, concurrency=concurrency)
            metrics = process_ci_metrics(bundles, time_range)
        except DashboardError as e:
            logger.error(f"fetch-ci-metrics failed: {e}")
            return error_response(e, passthrough_status=False)
        except Exception as e:
            logger.exception(f"Unexpected error in fetch-ci-metrics: {e}")
            return 500, {'error': 'Failed to fetch CI metrics', 'details': str(e)}

        return 200, metrics

    async def test_connection(self, params):
        """GET /api/gitlab/test-api?url=...&token=...

        Single version probe without retries, for the diagnostics page.
        """
        try:
            url = params.get('url')
            token = params.get('token')
            if not url or not token:
                raise ValidationError('Both url and token query parameters are required')
            gitlab_url = normalize_gitlab_url(url)

            logger.info(f"Testing GitLab API connection to: {gitlab_url}/api/v4/version")
            async with self.make_client(gitlab_url, token) as client:
                version = await client.get_version()
        except ValidationError as e:
            return error_response(e)
        except UpstreamAPIError as e:
            return error_response(e)
        except DashboardError as e:
            # Timeouts and unreachable hosts both read as "no response" here
            return 504, {'error': 'Connection error', 'details': e.details or e.message}
        except Exception as e:
            logger.exception(f"Unexpected error in test-api: {e}")
            return 500, {'error': 'Request setup error', 'details': str(e)}

        return 200, {
            'success': True,
            'gitlab_version': version,
            'message': 'Successfully connected to GitLab API',
        }

    def health(self):
        return 200, {'status': 'ok', 'timestamp': _utc_now_iso(), 'cache_entries': len(self.cache)}

    def cache_stats(self):
        return 200, self.cache.stats()

    def clear_cache(self, body=None):
        key = body.get('key') if isinstance(body, dict) else None
        if key:
            removed = self.cache.delete(key)
            return 200, {'cleared': removed, 'key': key}
        self.cache.clear()
        return 200, {'cleared': True}
