import logging

from .constants import APP_NAME, SCHEMA_VERSION

VERSION = "1.0.0"

logger = logging.getLogger(APP_NAME)


def log_banner():
    banner = f" {APP_NAME} "
    logger.info("=" * 40 + banner + "=" * 40)
    logger.info("Version: %s", VERSION)
    logger.info("Schema version: %s", SCHEMA_VERSION)
