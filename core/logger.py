"""
Service logger setup

Configures the root handlers once per process from LoggingConfig and
returns the named service logger. Modules keep using
``logging.getLogger(__name__)``.
"""

import logging
import sys
from typing import Optional

from core.config import LoggingConfig, get_settings

_configured = False


def setup_service_logger(
    service_name: str,
    config: Optional[LoggingConfig] = None,
) -> logging.Logger:
    """
    Configure logging for a service and return its logger.

    Args:
        service_name: Logger name for the service
        config: Optional LoggingConfig; defaults to global settings

    Returns:
        Logger named after the service
    """
    global _configured

    if config is None:
        config = get_settings().logging

    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if not _configured:
        formatter = logging.Formatter(config.log_format)
        root = logging.getLogger()
        root.setLevel(level)

        if config.enable_console:
            console = logging.StreamHandler(sys.stdout)
            console.setFormatter(formatter)
            root.addHandler(console)

        if config.log_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

        # Quiet chatty client libraries
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("nats").setLevel(logging.WARNING)

        _configured = True

    logger = logging.getLogger(service_name)
    logger.setLevel(level)
    return logger


__all__ = ["setup_service_logger"]
