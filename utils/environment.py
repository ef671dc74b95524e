"""Environment detection utilities for production vs development"""

import os
import logging

logger = logging.getLogger(__name__)


def get_environment_name() -> str:
    """
    Get the normalized environment name

    ENVIRONMENT takes priority, NODE_ENV is honoured for deployments that
    still export it. Anything unrecognised is treated as production.

    Returns:
        str: 'development' or 'production'
    """
    environment = (os.getenv('ENVIRONMENT') or os.getenv('NODE_ENV') or '').lower()
    if environment in ('development', 'dev', 'local'):
        return 'development'
    if environment and environment != 'production':
        logger.debug(f"🔍 Unknown ENVIRONMENT={environment!r}, treating as production")
    return 'production'


def is_production_environment() -> bool:
    """
    Check if we're running in production

    Returns:
        bool: True if in production, False if in development
    """
    return get_environment_name() == 'production'


def is_development_environment() -> bool:
    """Internal error detail is only echoed to clients in development"""
    return get_environment_name() == 'development'
