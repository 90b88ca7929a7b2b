# scripts/sweep_daemon.py
from __future__ import annotations

import logging

from app.workers.sweep import build_dispatcher
from services.observability import configure_logging
from settings import settings, validate_env_settings


logger = logging.getLogger("sweep_daemon")


def main() -> None:
    configure_logging(settings.LOG_LEVEL)
    validate_env_settings()
    interval = max(1, int(settings.SWEEP_INTERVAL_SECONDS))
    logger.info("Sweep daemon starting; interval=%ss", interval)

    try:
        build_dispatcher().run_forever(interval)
    except KeyboardInterrupt:
        logger.info("Sweep daemon exiting")


if __name__ == "__main__":
    main()
