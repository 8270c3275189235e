"""
Centralized logging configuration for the application.
"""

import logging
import os
import sys
from typing import Optional

from .config import AppConfig


def _resolve_level(config: Optional[AppConfig]) -> int:
    level_name = config.log_level if config is not None else os.getenv('LOG_LEVEL', 'INFO')
    return getattr(logging, level_name.upper(), logging.INFO)


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Setup centralized logging configuration.

    Args:
        config: AppConfig instance, falls back to the LOG_LEVEL environment variable if None
    """
    # Configure root logger
    logging.basicConfig(level=_resolve_level(config),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                        handlers=[logging.StreamHandler(sys.stdout)],
                        force=config is not None)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a logger with proper configuration.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, falls back to the LOG_LEVEL environment variable if None

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(config))
    return logger
