"""
Run the settlement engine as a long-lived process.

    python -m gameledger [config.yaml]

Loads settings, sets up logging, wires the game and ticks until interrupted.
"""

from __future__ import annotations
import logging
import sys
import threading

from .config import load_settings
from .log import setup_logging
from .service import GameService

logger = logging.getLogger("gameledger")


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    settings = load_settings(argv[0] if argv else "gameledger.yaml")
    setup_logging(settings.log_level, settings.log_file)

    service = GameService.from_settings(settings)
    logger.info("[READY] :: %d players, game year %s", service.ledger.account_count(), service.properties.current_year())
    service.engine.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("[SHUTDOWN] :: Interrupted")
    finally:
        service.engine.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
