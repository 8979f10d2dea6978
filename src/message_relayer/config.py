#!/usr/bin/env python3
"""Configuration management for the message relayer.

This module provides type-safe configuration dataclasses with validation
for the relayer. Configuration is loaded from environment variables with
sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, replace
from urllib.parse import urlparse

from web3 import Web3

# Get logger for this module
logger = logging.getLogger(__name__)

L2_CROSS_DOMAIN_MESSENGER_PREDEPLOY = "0x4200000000000000000000000000000000000007"
L2_TO_L1_MESSAGE_PASSER_PREDEPLOY = "0x4200000000000000000000000000000000000000"
MULTICALL2_PREDEPLOY = "0x5200000000000000000000000000000000000022"

_TRUTHY = {"1", "true", "yes", "on"}


def _validate_rpc_url(rpc_url: str, env_name: str) -> None:
    if not rpc_url:
        raise ValueError(f"RPC URL is required ({env_name})")

    parsed = urlparse(rpc_url)
    if parsed.scheme not in ('http', 'https'):
        raise ValueError(
            f"Invalid RPC URL scheme: {parsed.scheme}. "
            "Expected http or https"
        )


def _checksummed(instance: object, attr: str, env_name: str) -> None:
    """Validate an optional address attribute and store its checksum form."""
    address = getattr(instance, attr)
    if not address:
        return

    if not Web3.is_address(address):
        raise ValueError(f"Invalid address for {env_name}: {address}")

    checksummed = Web3.to_checksum_address(address)
    if checksummed != address:
        # Use object.__setattr__ since dataclass is frozen
        object.__setattr__(instance, attr, checksummed)


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUTHY


@dataclass(frozen=True, slots=True)
class SourceChainConfig:
    """Configuration for the source chain (L2).

    Attributes:
        rpc_url: RPC endpoint for the source chain
        messenger_address: L2 cross-domain messenger emitting outbound messages
        message_passer_address: Contract whose storage records sent messages
    """

    rpc_url: str
    messenger_address: str = L2_CROSS_DOMAIN_MESSENGER_PREDEPLOY
    message_passer_address: str = L2_TO_L1_MESSAGE_PASSER_PREDEPLOY

    def __post_init__(self) -> None:
        """Validate source chain configuration."""
        _validate_rpc_url(self.rpc_url, "L2_RPC_URL")
        _checksummed(self, 'messenger_address', "L2_CROSS_DOMAIN_MESSENGER")
        _checksummed(self, 'message_passer_address', "L2_TO_L1_MESSAGE_PASSER")


@dataclass(frozen=True, slots=True)
class DestinationChainConfig:
    """Configuration for the destination chain (L1).

    Attributes:
        rpc_url: RPC endpoint for the destination chain
        private_key: Key signing relay transactions
        l1_cross_domain_messenger: Messenger proxy receiving relayed messages
        state_commitment_chain: Contract holding state root batches
        address_manager: Address manager used to resolve missing addresses
        multicall_address: Aggregator contract; None selects single mode
    """

    rpc_url: str
    private_key: str
    l1_cross_domain_messenger: str | None = None
    state_commitment_chain: str | None = None
    address_manager: str | None = None
    multicall_address: str | None = None

    def __post_init__(self) -> None:
        """Validate destination chain configuration."""
        _validate_rpc_url(self.rpc_url, "L1_RPC_URL")

        if not self.private_key:
            raise ValueError("L1_PRIVATE_KEY environment variable is required")

        # Basic private key validation (should be 64 hex chars, optionally with 0x prefix)
        key = self.private_key.removeprefix('0x')
        if len(key) != 64:
            raise ValueError(
                f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
            )
        try:
            int(key, 16)
        except ValueError:
            raise ValueError(
                "Invalid private key format. Must be hexadecimal"
            ) from None

        _checksummed(self, 'l1_cross_domain_messenger', "L1_CROSS_DOMAIN_MESSENGER")
        _checksummed(self, 'state_commitment_chain', "STATE_COMMITMENT_CHAIN")
        _checksummed(self, 'address_manager', "ADDRESS_MANAGER")
        _checksummed(self, 'multicall_address', "MULTICALL_ADDRESS")

        # Contracts are either all given, or resolved from the address manager
        given = [self.l1_cross_domain_messenger, self.state_commitment_chain]
        if not self.address_manager and not all(given):
            raise ValueError(
                "L1 contract address is missing. Set L1_CROSS_DOMAIN_MESSENGER and "
                "STATE_COMMITMENT_CHAIN, or ADDRESS_MANAGER to resolve them"
            )

    @property
    def contracts_resolved(self) -> bool:
        return bool(self.l1_cross_domain_messenger and self.state_commitment_chain)


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Configuration for relay scheduling and submission."""
    start_position: int = 1  # first source block to scan
    poll_interval: float = 1.0  # seconds between finalization checks
    idle_interval: float = 1.0  # seconds to wait at the chain tip
    receipt_timeout: float = 15.0  # seconds to wait for confirmations
    gas_multiplier: float = 1.1  # applied to every gas estimate
    gas_ceiling: int = 1_500_000  # max gas of one aggregator transaction
    max_block_batch_size: int = 200  # source blocks per aggregate plan
    require_single_transaction: bool = True  # one transaction per source block
    log_chunk_size: int = 2000  # L1 blocks per eth_getLogs query
    request_timeout: int = 30  # HTTP request timeout in seconds

    def __post_init__(self) -> None:
        """Validate relay configuration."""
        if self.start_position < 0:
            raise ValueError(f"Start position must be non-negative, got {self.start_position}")
        # The genesis block carries no transaction
        if self.start_position == 0:
            object.__setattr__(self, 'start_position', 1)

        if self.poll_interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {self.poll_interval}")
        if self.idle_interval <= 0:
            raise ValueError(f"Idle interval must be positive, got {self.idle_interval}")
        if self.receipt_timeout <= 0:
            raise ValueError(f"Receipt timeout must be positive, got {self.receipt_timeout}")

        if self.gas_multiplier < 1.0:
            raise ValueError(f"Gas multiplier must be at least 1.0, got {self.gas_multiplier}")
        if self.gas_ceiling <= 0:
            raise ValueError(f"Gas ceiling must be positive, got {self.gas_ceiling}")

        if self.max_block_batch_size <= 0:
            raise ValueError(f"Max block batch size must be positive, got {self.max_block_batch_size}")
        if self.max_block_batch_size > 1000:
            raise ValueError(f"Max block batch size too high (max 1000), got {self.max_block_batch_size}")

        if self.log_chunk_size <= 0:
            raise ValueError(f"Log chunk size must be positive, got {self.log_chunk_size}")
        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Main configuration for the message relayer.

    Attributes:
        source_chain: Configuration for the source chain (L2)
        destination_chain: Configuration for the destination chain (L1)
        relay: Scheduling and submission settings
    """

    source_chain: SourceChainConfig
    destination_chain: DestinationChainConfig
    relay: RelayConfig

    @property
    def aggregate_mode(self) -> bool:
        """Whether messages are relayed in batches through the aggregator."""
        return self.destination_chain.multicall_address is not None

    @classmethod
    def from_env(cls) -> "RelayerConfig":
        """Load configuration from environment variables.

        Returns:
            RelayerConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        l2_rpc_url = os.environ.get("L2_RPC_URL", "")
        if not l2_rpc_url:
            raise ValueError(
                "L2_RPC_URL environment variable is required. "
                "This should be the RPC endpoint of the source chain."
            )

        source_config = SourceChainConfig(
            rpc_url=l2_rpc_url,
            messenger_address=os.environ.get(
                "L2_CROSS_DOMAIN_MESSENGER", L2_CROSS_DOMAIN_MESSENGER_PREDEPLOY
            ),
            message_passer_address=os.environ.get(
                "L2_TO_L1_MESSAGE_PASSER", L2_TO_L1_MESSAGE_PASSER_PREDEPLOY
            ),
        )

        l1_rpc_url = os.environ.get("L1_RPC_URL", "")
        if not l1_rpc_url:
            raise ValueError(
                "L1_RPC_URL environment variable is required. "
                "This should be the RPC endpoint of the destination chain."
            )

        multicall_address = os.environ.get("MULTICALL_ADDRESS") or None
        if multicall_address is None and _env_bool("IS_MULTICALL", False):
            multicall_address = MULTICALL2_PREDEPLOY

        destination_config = DestinationChainConfig(
            rpc_url=l1_rpc_url,
            private_key=os.environ.get("L1_PRIVATE_KEY", ""),
            l1_cross_domain_messenger=os.environ.get("L1_CROSS_DOMAIN_MESSENGER") or None,
            state_commitment_chain=os.environ.get("STATE_COMMITMENT_CHAIN") or None,
            address_manager=os.environ.get("ADDRESS_MANAGER") or None,
            multicall_address=multicall_address,
        )

        relay_config = RelayConfig(
            start_position=int(os.environ.get("FROM_L2_TRANSACTION_INDEX", "1")),
            poll_interval=float(os.environ.get("POLL_INTERVAL", "1.0")),
            idle_interval=float(os.environ.get("IDLE_INTERVAL", "1.0")),
            receipt_timeout=float(os.environ.get("RECEIPT_TIMEOUT", "15.0")),
            gas_multiplier=float(os.environ.get("GAS_MULTIPLIER", "1.1")),
            gas_ceiling=int(os.environ.get("MULTICALL_GAS_LIMIT", "1500000")),
            max_block_batch_size=int(os.environ.get("MAX_BLOCK_BATCH_SIZE", "200")),
            require_single_transaction=_env_bool("REQUIRE_SINGLE_TRANSACTION", True),
            log_chunk_size=int(os.environ.get("L1_LOG_CHUNK_SIZE", "2000")),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30")),
        )

        return cls(
            source_chain=source_config,
            destination_chain=destination_config,
            relay=relay_config,
        )

    def with_contracts(
        self,
        l1_cross_domain_messenger: str,
        state_commitment_chain: str,
    ) -> "RelayerConfig":
        """Create a new config with resolved L1 contract addresses.

        Since the config is frozen, resolving addresses from the address
        manager after connecting produces a new instance.

        Args:
            l1_cross_domain_messenger: Resolved messenger proxy address
            state_commitment_chain: Resolved state commitment chain address

        Returns:
            New RelayerConfig instance with the addresses set
        """
        destination_config = replace(
            self.destination_chain,
            l1_cross_domain_messenger=l1_cross_domain_messenger,
            state_commitment_chain=state_commitment_chain,
        )
        return replace(self, destination_chain=destination_config)

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Message Relayer Configuration")
        logger.info("=" * 60)

        logger.info("Source Chain (L2):")
        logger.info(f"  RPC URL: {self.source_chain.rpc_url}")
        logger.info(f"  Messenger: {self.source_chain.messenger_address}")
        logger.info(f"  Message Passer: {self.source_chain.message_passer_address}")

        logger.info("Destination Chain (L1):")
        logger.info(f"  RPC URL: {self.destination_chain.rpc_url}")
        logger.info(f"  L1CrossDomainMessenger: {self.destination_chain.l1_cross_domain_messenger or '[FROM ADDRESS MANAGER]'}")
        logger.info(f"  StateCommitmentChain: {self.destination_chain.state_commitment_chain or '[FROM ADDRESS MANAGER]'}")
        if self.destination_chain.address_manager:
            logger.info(f"  AddressManager: {self.destination_chain.address_manager}")
        logger.info(f"  Private Key: {'[SET]' if self.destination_chain.private_key else '[NOT SET]'}")

        logger.info("Relay Settings:")
        logger.info(f"  Mode: {'AGGREGATE' if self.aggregate_mode else 'SINGLE'}")
        if self.aggregate_mode:
            logger.info(f"  Multicall: {self.destination_chain.multicall_address}")
            logger.info(f"  Gas Ceiling: {self.relay.gas_ceiling}")
            logger.info(f"  Max Block Batch Size: {self.relay.max_block_batch_size}")
        logger.info(f"  Start Position: {self.relay.start_position}")
        logger.info(f"  Poll Interval: {self.relay.poll_interval} seconds")
        logger.info(f"  Receipt Timeout: {self.relay.receipt_timeout} seconds")
        logger.info(f"  Gas Multiplier: {self.relay.gas_multiplier}")
        logger.info(f"  Single Transaction Blocks: {self.relay.require_single_transaction}")

        logger.info("=" * 60)
