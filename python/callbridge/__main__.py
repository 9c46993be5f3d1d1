"""
Call Bridge entry point.

Usage:
    python -m callbridge

Environment Variables:
    CALLBRIDGE_AMI_USERNAME / CALLBRIDGE_AMI_SECRET - Manager login (required)
    CALLBRIDGE_DATABASE_URL - CRM store DSN
    CALLBRIDGE_LOG_LEVEL - Log level (DEBUG, INFO, WARNING, ERROR)
"""

import asyncio
import signal
import sys

from .config import get_config, setup_logging
from .core.bridge import CallBridge

# Initialize logging
logger = setup_logging()


async def main():
    """Main entry point."""
    config = get_config()

    if not config.has_ami_credentials:
        logger.error("No AMI credentials configured.")
        logger.error("Set CALLBRIDGE_AMI_USERNAME and CALLBRIDGE_AMI_SECRET.")
        sys.exit(1)

    bridge = CallBridge(config)

    # Handle shutdown signals
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown requested...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: signal_handler())

    try:
        await bridge.run_forever(shutdown_event)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=e)
        sys.exit(1)


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
