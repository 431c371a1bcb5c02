"""
logger.py
---------
Application-wide logging configuration for the orchestrator.

Design Decisions:
    * A single root logger ("tablemigrate") is configured once at import time.
    * All modules obtain a child logger via ``get_logger(__name__)``.
    * Both sites usually ship their logs to the same place, so every line
      carries the local site name (``[site_a]``). It starts from
      ``SITE_NAME`` and follows the site a ``MigrationService`` is built for.
    * Lifecycle events that operators grep for (operation start, phase
      transitions, pauses and failures) go through ``log_event`` which
      appends the event fields as a compact JSON suffix.
    * Optional file handler appends lines to a persistent log file (path set
      via LOG_FILE env variable).
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from config import CONFIG, get_log_level

_ROOT_LOGGER_NAME = "tablemigrate"
_CONSOLE_FORMAT = "%(asctime)s [%(levelname)-8s] [%(site)s] %(name)s: %(message)s"
_FILE_FORMAT = (
    "%(asctime)s [%(levelname)s] [%(site)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
)
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_configured = False


class SiteFilter(logging.Filter):
    """Stamps records with the local site unless the caller passed ``extra={"site": ...}``."""

    def __init__(self, site: str) -> None:
        super().__init__()
        self.site = site

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "site"):
            record.site = self.site
        return True


_site_filter = SiteFilter(CONFIG.coordination.site_name)


def _configure_root_logger() -> None:
    """One-time setup of the root 'tablemigrate' logger and its handlers."""
    global _configured
    if _configured:
        return
    _configured = True

    root = logging.getLogger(_ROOT_LOGGER_NAME)
    root.setLevel(get_log_level())

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(get_log_level())
    console_handler.addFilter(_site_filter)
    console_handler.setFormatter(
        logging.Formatter(fmt=_CONSOLE_FORMAT, datefmt=_DATE_FORMAT)
    )
    root.addHandler(console_handler)

    if CONFIG.migration.log_file:
        log_path = Path(CONFIG.migration.log_file)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.addFilter(_site_filter)
            file_handler.setFormatter(
                logging.Formatter(fmt=_FILE_FORMAT, datefmt=_DATE_FORMAT)
            )
            root.addHandler(file_handler)
        except OSError as exc:
            root.warning("Could not create log file '%s': %s", log_path, exc)


_configure_root_logger()


def set_site(site: str) -> None:
    """Change the site name stamped on subsequent log lines."""
    _site_filter.site = site


def get_logger(name: str) -> logging.Logger:
    """
    Return a child logger scoped to the given name.

    Args:
        name: Typically ``__name__`` of the calling module.

    Returns:
        A :class:`logging.Logger` instance under the 'tablemigrate' hierarchy.

    Example::

        log = get_logger(__name__)
        log.info("Reusing job %s (status=%s, cursor=%s)", job_name, status, cursor)
        log.critical("REPLICATION MAY STILL BE DISABLED for operation %s: %s", op_id, exc)
        # 2024-06-01T12:00:00 [INFO    ] [site_a] tablemigrate.core.batch_engine: Reusing job ...
    """
    return logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}")


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    **fields: Any,
) -> None:
    """
    Log a lifecycle event with its fields serialised as JSON.

    Example::

        log_event(log, logging.WARNING, "operation_paused",
                  operation_id="op-1", site="site_a",
                  job="archive_orders_site_a_op-1", reason="max_batches")
        # ... operation_paused {"job": "archive_orders_site_a_op-1", "operation_id": "op-1", ...}
    """
    payload = {"timestamp": datetime.now(timezone.utc).isoformat(), **fields}
    logger.log(level, "%s %s", event, json.dumps(payload, default=str, sort_keys=True))
