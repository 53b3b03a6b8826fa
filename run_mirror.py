"""Convenience launcher for the background Jira mirror.

Usage:
  python run_mirror.py [settings.yaml]

Credentials come from JIRA_SERVER / JIRA_EMAIL / JIRA_API_TOKEN or the
``jira`` section of the settings file. Runs a sync immediately and then every
``sync.interval_minutes`` until interrupted.
"""

from __future__ import annotations

import logging
import sys
import threading

from jira_mirror.core.config import load_settings
from jira_mirror.core.exceptions import ConfigurationError
from jira_mirror.core.service import MirrorService
from jira_mirror.sync import SyncScheduler

logger = logging.getLogger("jira_mirror")


def _log_progress(message: str, current: int | None, total: int | None) -> None:
    if total:
        logger.info("%s (%s/%s)", message, current, total)
    else:
        logger.info("%s", message)


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        settings = load_settings(argv[0] if argv else "settings.yaml")
    except ConfigurationError as exc:
        logger.error("Invalid settings: %s", exc)
        return 2
    if not settings.jira.complete:
        logger.error("Jira credentials not found. Set JIRA_SERVER, JIRA_EMAIL and JIRA_API_TOKEN.")
        return 2

    try:
        service = MirrorService.from_settings(settings)
    except ConfigurationError as exc:
        logger.error("Invalid category rules: %s", exc)
        return 2
    service.subscribe_progress(_log_progress)
    scheduler = SyncScheduler(service.orchestrator, settings.sync_interval_minutes * 60.0)
    scheduler.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        scheduler.stop()
        service.store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
