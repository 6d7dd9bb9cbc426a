#!/usr/bin/env python3
"""Entry point for the Relay Agent service.

Runs one relay role (verifier or executor) in either production (ROFL)
or local testing mode.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from relay_agent.relayer import RelayAgent


async def main() -> None:
    """Main entry point for the Relay Agent.

    Parses startup arguments, loads configuration from environment,
    and runs the agent until interrupted or a critical task fails.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Relay Agent - verify and execute cross-chain messages",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RELAY_ROLE              - verifier or executor
  SOURCE_EVENT            - Source event (default depends on role)
  RPC_URL                 - Source chain RPC endpoint (http(s) or ws(s))
  WS_RPC_URL              - Optional WebSocket endpoint for push delivery
  DEST_RPC_URL            - Destination chain HTTP RPC (default: RPC_URL)
  SOURCE_CONTRACT_ADDRESS - Endpoint contract emitting source events
  DEST_CONTRACT_ADDRESS   - Verifier or executor contract
  START_BLOCK             - First block to scan (default: head - LOOKBACK_BLOCKS)
  LOOKBACK_BLOCKS         - Startup lookback window (default: 5000)
  SCAN_RANGE              - Max blocks per log query (default: 2000)
  POLL_INTERVAL_MS        - Head polling interval (default: 2000)
  CONFIRMATION_TIMEOUT    - Seconds to await a receipt (default: 120)
  PRIVATE_KEY             - Private key for local mode (required with --local)
  LOG_LEVEL               - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--local",
        action="store_true",
        default=False,
        help="Sign transactions with PRIVATE_KEY instead of ROFL (for testing)"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO").upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)

    if mode_msg := ("(LOCAL MODE)" if args.local else ""):
        logger.info(f"=== Relay Agent Starting {mode_msg} ===")
        logger.info("Local mode enabled: ROFL utilities disabled")
    else:
        logger.info("=== Relay Agent Starting ===")

    logger.info("Loading configuration from environment...")

    try:
        agent: RelayAgent = RelayAgent.from_env(local_mode=args.local)
        logger.info("Configuration loaded successfully")
    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - RELAY_ROLE: verifier or executor")
        logger.error("  - RPC_URL: Source chain RPC endpoint")
        logger.error("  - SOURCE_CONTRACT_ADDRESS: Endpoint contract address")
        logger.error("  - DEST_CONTRACT_ADDRESS: Verifier or executor contract address")
        if args.local:
            logger.error("  - PRIVATE_KEY: Required for local mode")
        sys.exit(1)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, agent.stop)

    try:
        await agent.run()
    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
