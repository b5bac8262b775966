"""Logging configuration"""
import logging

from subsync.core.config import settings

QUIET_LIBRARIES = ("stripe", "urllib3", "urllib3.connectionpool", "httpx", "httpcore")


def setup_logging():
    """Configure root logging once at import of the application"""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    # Gateway SDK and HTTP client chatter only shows up when debugging
    for name in QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.DEBUG if level <= logging.DEBUG else logging.WARNING)


# Billing subsystems log under their own names
billing_logger = logging.getLogger("subsync.billing")
webhook_logger = logging.getLogger("subsync.webhooks")
scheduler_logger = logging.getLogger("subsync.scheduler")
task_queue_logger = logging.getLogger("subsync.task_queue")
