#!/usr/bin/env python3
"""
Error types for the GitLab CI Analytics backend

Every error that can reach an HTTP response derives from DashboardError and
knows its HTTP status and JSON body. Upstream errors are raised by
gitlab_client and classified here so retry predicates and request handlers
can branch on type instead of inspecting messages.
"""

import logging

logger = logging.getLogger(__name__)


class DashboardError(Exception):
    """Base error with an HTTP status and a JSON-serializable body"""

    http_status = 500
    label = 'Internal error'

    def __init__(self, message, details=None, suggestion=None):
        super().__init__(message)
        self.message = message
        self.details = details
        self.suggestion = suggestion

    def to_dict(self):
        body = {'error': self.label, 'details': self.details or self.message}
        if self.suggestion:
            body['suggestion'] = self.suggestion
        return body


class ValidationError(DashboardError):
    """Missing or malformed request field (never retried, never sent upstream)"""

    http_status = 400

    def __init__(self, message, field=None):
        super().__init__(message)
        self.field = field

    def to_dict(self):
        body = {'error': self.message}
        if self.field:
            body['field'] = self.field
        return body


class UpstreamUnreachable(DashboardError):
    """No response at all: connection refused, DNS failure, failed probe"""

    http_status = 503
    label = 'GitLab API is not accessible'

    def __init__(self, message, details=None,
                 suggestion='Please check your GitLab URL and token'):
        super().__init__(message, details=details, suggestion=suggestion)


class UpstreamTimeout(DashboardError):
    """The upstream accepted the connection but answered too slowly"""

    http_status = 504
    label = 'Connection timeout'

    def __init__(self, message, details=None,
                 suggestion='Try again later or reduce the scope of the request'):
        super().__init__(message, details=details, suggestion=suggestion)


class UpstreamAPIError(DashboardError):
    """Non-2xx response from the GitLab API

    Attributes:
        status_code: HTTP status returned by GitLab (None for a malformed body)
        retry_after: Seconds requested by a Retry-After header, if any
    """

    label = 'GitLab API error'

    def __init__(self, message, status_code=None, retry_after=None, details=None):
        super().__init__(message, details=details)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def http_status(self):
        if self.status_code and 400 <= self.status_code < 600:
            return self.status_code
        return 502

    @property
    def is_rate_limited(self):
        return self.status_code == 429

    @property
    def is_transient(self):
        return self.status_code == 429 or (self.status_code is not None and self.status_code >= 500)

    def to_dict(self):
        body = {'error': self.label, 'status': self.status_code, 'details': self.details or self.message}
        return body


class NoDataFound(DashboardError):
    """Zero projects matched the namespace/membership filter"""

    http_status = 404

    def to_dict(self):
        return {'error': self.message}


class PartialFailure(DashboardError):
    """One item of a fan-out failed

    Recorded on an Outcome and logged; never raised past the fan-out boundary.
    """

    def __init__(self, item, cause):
        super().__init__(f"{item}: {cause}")
        self.item = item
        self.cause = cause


def error_response(exc, passthrough_status=True):
    """Map an exception to an (http_status, body) pair

    Args:
        exc: Any exception raised while serving a request
        passthrough_status: When False, GitLab API errors are reported as
            502 Bad Gateway instead of echoing the upstream status code

    Returns:
        tuple: (int status, dict body)
    """
    if isinstance(exc, UpstreamAPIError) and not passthrough_status:
        return 502, exc.to_dict()
    if isinstance(exc, DashboardError):
        return exc.http_status, exc.to_dict()
    logger.exception(f"Unhandled error: {exc}")
    return 500, {'error': 'Server error', 'details': str(exc)}
