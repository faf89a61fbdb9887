#!/usr/bin/env python3
"""
Configuration Loader Module for GitLab CI Analytics

Handles loading configuration from config.json and environment variables.
GitLab URLs and tokens are not part of the server configuration: they arrive
with each request from the UI.
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

# Compute project root directory (parent of ci_analytics/)
# This ensures paths work correctly regardless of where the script is run from
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Valid log level names (case-insensitive)
VALID_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

# Defaults for every supported key: (config key, environment variable, default)
INT_SETTINGS = (
    ('port', 'PORT', 3000),
    ('cache_ttl_sec', 'CACHE_TTL', 600),
    ('namespace_page_size', 'NAMESPACE_PAGE_SIZE', 100),
    ('namespace_max_pages', 'NAMESPACE_MAX_PAGES', 10),
    ('namespace_concurrency', 'NAMESPACE_CONCURRENCY', 3),
    ('pipeline_concurrency', 'PIPELINE_CONCURRENCY', 0),
    ('max_retries', 'MAX_RETRIES', 3),
)

FLOAT_SETTINGS = (
    ('request_timeout_sec', 'REQUEST_TIMEOUT', 10.0),
    ('probe_timeout_sec', 'PROBE_TIMEOUT', 5.0),
    ('namespace_timeout_sec', 'NAMESPACE_TIMEOUT', 25.0),
    ('namespace_budget_sec', 'NAMESPACE_BUDGET', 25.0),
    ('initial_retry_delay', 'INITIAL_RETRY_DELAY', 1.0),
    ('max_retry_delay', 'MAX_RETRY_DELAY', 10.0),
)

BOOL_SETTINGS = (
    ('insecure_skip_verify', 'INSECURE_SKIP_VERIFY', False),
    ('namespace_top_level_only', 'NAMESPACE_TOP_LEVEL_ONLY', False),
)


def get_log_level():
    """Get log level from environment variable LOG_LEVEL

    Returns:
        int: Logging level constant (e.g., logging.INFO)

    Environment Variables:
        LOG_LEVEL: One of DEBUG, INFO, WARNING, ERROR, CRITICAL (case-insensitive)
                   Defaults to INFO if not set or invalid
    """
    level_str = os.environ.get('LOG_LEVEL', 'INFO').upper()
    if level_str not in VALID_LOG_LEVELS:
        return logging.INFO
    return getattr(logging, level_str)


def configure_logging():
    """Configure logging with level from environment

    Returns:
        str: The configured log level name (e.g., 'INFO')
    """
    level = get_log_level()
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s'
    )
    return logging.getLevelName(level)


def parse_int_config(value, default, name):
    """Parse integer configuration value with error handling"""
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning(f"Invalid {name} value: {value}. Using default: {default}")
        return default


def parse_float_config(value, default, name):
    """Parse float configuration value with error handling"""
    try:
        return float(value)
    except (ValueError, TypeError):
        logger.warning(f"Invalid {name} value: {value}. Using default: {default}")
        return default


def parse_bool_config(value, default, name):
    """Parse boolean configuration value with error handling

    Args:
        value: Value to parse (string, bool, or None)
        default: Default value if parsing fails or value is None
        name: Name of the config option for error messages

    Returns:
        bool: Parsed boolean value or default
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ['true', '1', 'yes']
    logger.warning(f"Invalid {name} value: {value}. Using default: {default}")
    return default


def _resolve(config, key, env_name, default):
    """Environment variable > config.json value > default"""
    if env_name in os.environ:
        return os.environ[env_name], env_name
    if key in config and config[key] is not None:
        return config[key], key
    return default, key


def load_config(config_file=None):
    """Load configuration from config.json or environment variables

    Configuration is loaded with the following priority:
    1. Environment variables (highest priority)
    2. config.json (if exists)
    3. Built-in defaults (lowest priority)

    Args:
        config_file: Optional path overriding {PROJECT_ROOT}/config.json

    Returns:
        dict: Configuration dictionary with all settings
    """
    raw = {}
    config_source = "environment variables"

    config_file = config_file or os.path.join(PROJECT_ROOT, 'config.json')
    if os.path.exists(config_file):
        try:
            with open(config_file, 'r') as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                logger.warning(f"{config_file} does not contain a JSON object. Ignoring it.")
                raw = {}
            else:
                config_source = "config.json"
                logger.info(f"Configuration loaded from {config_file}")
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load {config_file}: {e}. Falling back to environment variables.")
            raw = {}

    config = {}

    if 'LOG_LEVEL' in os.environ:
        config['log_level'] = os.environ['LOG_LEVEL'].upper()
    elif 'log_level' in raw:
        config['log_level'] = str(raw['log_level']).upper()
    else:
        config['log_level'] = 'INFO'
    if config['log_level'] not in VALID_LOG_LEVELS:
        logger.warning(f"Invalid LOG_LEVEL '{config['log_level']}'. Using default: INFO")
        config['log_level'] = 'INFO'

    # Reconfigure logging with the resolved level
    logging.getLogger().setLevel(getattr(logging, config['log_level']))

    config['host'] = os.environ.get('HOST', raw.get('host', ''))

    for key, env_name, default in INT_SETTINGS:
        value, name = _resolve(raw, key, env_name, default)
        config[key] = parse_int_config(value, default, name)

    for key, env_name, default in FLOAT_SETTINGS:
        value, name = _resolve(raw, key, env_name, default)
        config[key] = parse_float_config(value, default, name)

    for key, env_name, default in BOOL_SETTINGS:
        value, name = _resolve(raw, key, env_name, default)
        config[key] = parse_bool_config(value, default, name)

    # CA bundle path (preferred over insecure_skip_verify for internal CAs)
    config['ca_bundle_path'] = os.environ.get('CA_BUNDLE_PATH', raw.get('ca_bundle_path'))

    logger.info(f"Configuration loaded from: {config_source}")
    logger.info(f"  Log level: {config['log_level']}")
    logger.info(f"  Listen: {config['host'] or '0.0.0.0'}:{config['port']}")
    logger.info(f"  Cache TTL: {config['cache_ttl_sec']}s")
    logger.info(f"  Timeouts: request={config['request_timeout_sec']}s, probe={config['probe_timeout_sec']}s, "
                f"groups={config['namespace_timeout_sec']}s")
    logger.info(f"  Namespace fetch: budget={config['namespace_budget_sec']}s, max_pages={config['namespace_max_pages']}, "
                f"concurrency={config['namespace_concurrency']}, top_level_only={config['namespace_top_level_only']}")
    logger.info(f"  Pipeline concurrency: {config['pipeline_concurrency'] or 'unbounded'}")
    logger.info(f"  Retries: max={config['max_retries']}, initial_delay={config['initial_retry_delay']}s, "
                f"max_delay={config['max_retry_delay']}s")
    logger.info(f"  CA bundle path: {config['ca_bundle_path'] if config['ca_bundle_path'] else 'None (using system default)'}")
    logger.info(f"  Insecure skip verify: {config['insecure_skip_verify']}")

    return config


def validate_config(config):
    """Validate configuration values and fail-fast if invalid

    Validates:
    - port is in 1-65535
    - cache_ttl_sec is not negative
    - timeouts, budget and retry delays are positive
    - page size is 1-100, max pages and namespace concurrency are positive
    - max_retries is at least 1, pipeline_concurrency is not negative

    Args:
        config: Configuration dict from load_config()

    Returns:
        bool: True if configuration is valid, False otherwise

    Side effects:
        Logs error messages describing which key is invalid and how to fix it
    """
    is_valid = True

    def fail(key, requirement, env_name):
        nonlocal is_valid
        logger.error(f"Configuration error: '{key}' must be {requirement}, got: {config.get(key)}")
        logger.error(f"  Fix: Set {env_name} environment variable or '{key}' in config.json")
        is_valid = False

    port = config.get('port')
    if not isinstance(port, int) or not 0 < port < 65536:
        fail('port', 'an integer between 1 and 65535', 'PORT')

    cache_ttl = config.get('cache_ttl_sec')
    if not isinstance(cache_ttl, int) or cache_ttl < 0:
        fail('cache_ttl_sec', 'a non-negative integer', 'CACHE_TTL')

    for key, env_name, _default in FLOAT_SETTINGS:
        value = config.get(key)
        if not isinstance(value, (int, float)) or value <= 0:
            fail(key, 'a positive number', env_name)

    page_size = config.get('namespace_page_size')
    if not isinstance(page_size, int) or not 0 < page_size <= 100:
        fail('namespace_page_size', 'an integer between 1 and 100', 'NAMESPACE_PAGE_SIZE')

    for key, env_name in (('namespace_max_pages', 'NAMESPACE_MAX_PAGES'),
                          ('namespace_concurrency', 'NAMESPACE_CONCURRENCY'),
                          ('max_retries', 'MAX_RETRIES')):
        value = config.get(key)
        if not isinstance(value, int) or value < 1:
            fail(key, 'a positive integer', env_name)

    pipeline_concurrency = config.get('pipeline_concurrency')
    if not isinstance(pipeline_concurrency, int) or pipeline_concurrency < 0:
        fail('pipeline_concurrency', '0 (unbounded) or a positive integer', 'PIPELINE_CONCURRENCY')

    if config.get('namespace_budget_sec', 0) > 60:
        logger.warning(f"Configuration warning: 'namespace_budget_sec' is {config['namespace_budget_sec']}s. "
                       "Serverless platforms usually terminate requests before that.")

    if is_valid:
        logger.info("Configuration validation passed")
    else:
        logger.error("Configuration validation failed - see errors above")

    return is_valid
