#!/usr/bin/env python3
"""
GitLab CI Analytics Backend Server

HTTP entry point built on http.server. Request handler threads hand their
work to a single long-lived asyncio event loop (AsyncRunner), so upstream
fan-out never blocks a thread and background namespace fetches can finish
after a partial response has been sent.

Modules:
- config_loader: Configuration loading from config.json and environment variables
- services: Validation and orchestration behind each route
- namespaces / pipelines / metrics: The fetch and aggregation pipeline
"""

import asyncio
import json
import os
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse
import logging

# Add parent directory to path to allow direct execution (python3 ci_analytics/app.py)
_parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _parent_dir not in sys.path:
    sys.path.insert(0, _parent_dir)

from ci_analytics.cache import ResultCache
from ci_analytics.config_loader import configure_logging, load_config, validate_config
from ci_analytics.services import DashboardServices

# Configure logging at module load (can be reconfigured in main())
_configured_level = configure_logging()
logger = logging.getLogger(__name__)

# Largest request body accepted (bytes)
MAX_BODY_BYTES = 64 * 1024

API_PREFIX = '/api'

GET_ROUTES = {
    '/gitlab/test-api': 'handle_test_api',
    '/health': 'handle_health',
    '/test': 'handle_health',
    '/cache/stats': 'handle_cache_stats',
}

POST_ROUTES = {
    '/gitlab/fetch-namespaces': 'handle_fetch_namespaces',
    '/gitlab/fetch-ci-metrics': 'handle_fetch_ci_metrics',
    '/cache/clear': 'handle_cache_clear',
}


def route_path(path):
    """Strip the optional /api prefix so both spellings hit the same route"""
    path = path.rstrip('/') or '/'
    if path == API_PREFIX or path.startswith(API_PREFIX + '/'):
        path = path[len(API_PREFIX):] or '/'
    return path


class AsyncRunner(threading.Thread):
    """Daemon thread owning the process-wide asyncio event loop"""

    def __init__(self):
        super().__init__(name='async-runner', daemon=True)
        self.loop = asyncio.new_event_loop()
        self._started = threading.Event()

    def run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(self._started.set)
        try:
            self.loop.run_forever()
        finally:
            self.loop.close()

    def start(self):
        super().start()
        self._started.wait()

    def submit(self, coro, timeout=None):
        """Run coro on the loop and block the calling thread for its result"""
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout)

    def stop(self):
        self.loop.call_soon_threadsafe(self.loop.stop)


class DashboardRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the analytics API"""

    server_version = 'GitLabCIAnalytics/1.0'

    def do_GET(self):
        """Handle GET requests"""
        parsed = urlparse(self.path)
        handler_name = GET_ROUTES.get(route_path(parsed.path))
        if handler_name is None:
            self.send_json_response({'error': 'Endpoint not found'}, status=404)
            return
        params = {key: values[0] for key, values in parse_qs(parsed.query).items()}
        getattr(self, handler_name)(params)

    def do_POST(self):
        """Handle POST requests"""
        parsed = urlparse(self.path)
        handler_name = POST_ROUTES.get(route_path(parsed.path))
        if handler_name is None:
            self.send_json_response({'error': 'Endpoint not found'}, status=404)
            return
        body = self.read_json_body()
        if body is None:
            return
        getattr(self, handler_name)(body)

    def do_OPTIONS(self):
        """Handle OPTIONS requests for CORS preflight"""
        self.send_response(200)
        self.send_header('Access-Control-Allow-Origin', '*')
        self.send_header('Access-Control-Allow-Methods', 'GET, POST, OPTIONS')
        self.send_header('Access-Control-Allow-Headers', 'Content-Type')
        self.send_header('Access-Control-Max-Age', '86400')  # Cache preflight for 24 hours
        self.end_headers()

    def read_json_body(self):
        """Decode the JSON request body, answering 400/413 itself on failure

        Returns:
            dict: Decoded body ({} when empty)
            None: An error response has already been sent
        """
        try:
            length = int(self.headers.get('Content-Length') or 0)
        except ValueError:
            length = -1
        if length < 0:
            self.send_json_response({'error': 'Invalid Content-Length header'}, status=400)
            return None
        if length > MAX_BODY_BYTES:
            self.send_json_response({'error': 'Request body too large'}, status=413)
            return None
        if length == 0:
            return {}
        raw = self.rfile.read(length)
        try:
            body = json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self.send_json_response({'error': 'Invalid JSON body', 'details': str(e)}, status=400)
            return None
        if not isinstance(body, dict):
            self.send_json_response({'error': 'Request body must be a JSON object'}, status=400)
            return None
        return body

    def run_service(self, coro):
        """Run a service coroutine on the server's event loop and send its result"""
        try:
            status, payload = self.server.runner.submit(coro)
        except Exception as e:
            logger.exception(f"Error running request {self.path}: {e}")
            status, payload = 500, {'error': 'Server error', 'details': str(e)}
        self.send_json_response(payload, status=status)

    def handle_fetch_namespaces(self, body):
        self.run_service(self.server.services.fetch_namespaces(body))

    def handle_fetch_ci_metrics(self, body):
        self.run_service(self.server.services.fetch_ci_metrics(body))

    def handle_test_api(self, params):
        self.run_service(self.server.services.test_connection(params))

    def handle_health(self, params):
        status, payload = self.server.services.health()
        self.send_json_response(payload, status=status)

    def handle_cache_stats(self, params):
        status, payload = self.server.services.cache_stats()
        self.send_json_response(payload, status=status)

    def handle_cache_clear(self, body):
        status, payload = self.server.services.clear_cache(body)
        self.send_json_response(payload, status=status)

    def send_json_response(self, data, status=200):
        """Send JSON response with security headers

        A client that disconnected before the body was written is logged at
        debug level only.
        """
        try:
            self.send_response(status)
            self.send_header('Content-Type', 'application/json')
            self.send_header('Access-Control-Allow-Origin', '*')
            self.send_header('Cache-Control', 'no-store, max-age=0')
            self.send_header('X-Content-Type-Options', 'nosniff')
            self.end_headers()
            self.wfile.write(json.dumps(data, indent=2, default=str).encode('utf-8'))
        except (BrokenPipeError, ConnectionResetError, ConnectionAbortedError) as e:
            logger.debug(f"Client disconnected before response was sent ({type(e).__name__}): {e}")

    def log_message(self, format, *args):
        """Route access logs through logging, tagged [api]"""
        logger.info("[api] %s %s - %s - %s" % (
            getattr(self, 'command', 'UNKNOWN'),
            self.path if hasattr(self, 'path') else '',
            format % args,
            self.address_string()
        ))


class DashboardServer(ThreadingHTTPServer):
    """Threaded HTTP server carrying the shared services and event loop"""

    daemon_threads = True

    def __init__(self, server_address, RequestHandlerClass, services, runner):
        super().__init__(server_address, RequestHandlerClass)
        self.services = services
        self.runner = runner


def main():
    """Main entry point"""
    logger.info("Starting GitLab CI Analytics server...")

    config = load_config()
    if not validate_config(config):
        logger.error("Server startup aborted due to configuration errors")
        return 1

    cache = ResultCache(ttl_seconds=config['cache_ttl_sec'])
    services = DashboardServices(config, cache=cache)

    runner = AsyncRunner()
    runner.start()

    server_address = (config['host'], config['port'])
    httpd = DashboardServer(server_address, DashboardRequestHandler, services, runner)

    logger.info(f"Server running at http://localhost:{config['port']}/")
    logger.info("Press Ctrl+C to stop the server")

    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down server...")
    finally:
        httpd.server_close()
        try:
            runner.submit(services.namespace_enumerator.drain(), timeout=5)
        except Exception as e:
            logger.warning(f"Background namespace fetches did not finish cleanly: {e}")
        runner.stop()
        runner.join(timeout=5)
        if runner.is_alive():
            logger.warning("Event loop thread did not stop cleanly")
        logger.info("Server stopped.")

    return 0


if __name__ == '__main__':
    sys.exit(main() or 0)
