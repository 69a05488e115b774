#!/usr/bin/env python3
"""
Main entrypoint: bootstrap the database, start the materialization scheduler and serve the API.
Run with: python -m tasktide.run   (or the `tasktide` console script)
Migrate only: python -m tasktide.database
"""
from __future__ import annotations

import atexit
import logging
import signal
import sys

import uvicorn

from .config import load as load_config
from .database import init_database
from .scheduler import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    # App loggers (tasktide.*) emit to the same stream as uvicorn
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
        force=True,
    )


def main() -> None:
    config = load_config()
    configure_logging(config.debug)
    db_path = init_database()
    logger.info("Database ready at %s", db_path)

    if start_scheduler():
        atexit.register(stop_scheduler)
        signal.signal(signal.SIGTERM, lambda *_: (stop_scheduler(), sys.exit(0)))

    # Run web app (blocking)
    uvicorn.run(
        "tasktide.web_app:app",
        host="0.0.0.0",
        port=config.web_ui_port,
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    main()
