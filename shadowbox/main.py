#!/usr/bin/env python3
"""Entry point for the Shadowbox management server."""

import asyncio
import logging
import sys

from .core.exceptions import StartupError
from .logging_config import setup_logging
from .orchestrator import StartupOrchestrator

logger = logging.getLogger(__name__)


def main() -> int:
    """Run the server. Returns the process exit code."""
    # Reconfigured once the verbosity flag has been validated
    setup_logging(verbose=False)

    orchestrator = StartupOrchestrator()
    try:
        asyncio.run(orchestrator.run())
    except StartupError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        return 0
    except Exception as e:
        logger.error("Error running server: %s", e, exc_info=True)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
