#!/usr/bin/env python3
"""Entry point for the message relayer service.

Loads configuration from the environment and runs the relay loop until it
is interrupted or hits a fatal error.
"""

import argparse
import asyncio
import logging
import os
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

from message_relayer.config import RelayerConfig
from message_relayer.scheduler import MessageRelayer


async def main() -> None:
    """Main entry point for the message relayer.

    Parses startup arguments, loads configuration from environment,
    and starts the relay loop.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Message Relayer - Relay finalized L2 messages to L1",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  L2_RPC_URL                 - RPC endpoint for the L2 chain
  L1_RPC_URL                 - RPC endpoint for the L1 chain
  L1_PRIVATE_KEY             - Key signing relay transactions
  L1_CROSS_DOMAIN_MESSENGER  - L1 messenger proxy address
  STATE_COMMITMENT_CHAIN     - State commitment chain address
  ADDRESS_MANAGER            - Resolves the two addresses above when unset
  MULTICALL_ADDRESS          - Aggregator contract (or IS_MULTICALL=true)
  FROM_L2_TRANSACTION_INDEX  - First L2 block to relay (default: 1)
  POLL_INTERVAL              - Seconds between finalization checks (default: 1)
  LOG_LEVEL                  - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== Message Relayer Starting ===")
    logger.info("Loading configuration from environment...")

    relayer: MessageRelayer | None = None
    try:
        config: RelayerConfig = RelayerConfig.from_env()
        logger.info("Configuration loaded successfully")

        relayer = MessageRelayer.from_config(config)
        await relayer.run()

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - L2_RPC_URL: RPC endpoint for the L2 chain")
        logger.error("  - L1_RPC_URL: RPC endpoint for the L1 chain")
        logger.error("  - L1_PRIVATE_KEY: Key signing relay transactions")
        logger.error("  - L1_CROSS_DOMAIN_MESSENGER and STATE_COMMITMENT_CHAIN, or ADDRESS_MANAGER")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
        if relayer is not None:
            relayer.stop()

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
