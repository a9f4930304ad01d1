# src/genboard/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState and serves the backend with uvicorn
until interrupted.
"""

from __future__ import annotations

import logging

import uvicorn

from ..api.http_api import create_app
from ..cli.bootstrap import create_app_state
from ..config import get_settings
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()

    level_name = str(settings.log_level).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.log_dir, console_level=console_level)

    logger.info("Starting %s on %s:%d (data=%s)", settings.app_name, settings.host, settings.port, settings.data_dir)

    # IMPORTANT: reuse same settings object
    state = create_app_state(settings=settings)
    app = create_app(state)

    try:
        uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    finally:
        logger.info("Bye.")


if __name__ == "__main__":
    main()
