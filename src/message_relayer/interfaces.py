"""Capability protocols the relay core depends on.

The scheduler, classifier, planner and executor only talk to the chains
through these protocols. ``messenger.Web3Messenger`` implements all of them
against live nodes; tests use an in-memory fake.
"""

from collections.abc import Sequence
from typing import Protocol

from .models import (
    BatchHeader,
    Call,
    CrossChainMessage,
    MessageDirection,
    SourceBlock,
    StatusReport,
)


class SourceChain(Protocol):
    """Read access to the source chain."""

    async def get_block_number(self) -> int:
        """Return the current source chain height."""
        ...

    async def get_block(self, number: int) -> SourceBlock | None:
        """Return the block at ``number``, or None if it does not exist yet."""
        ...

    async def get_messages_by_transaction(
        self,
        tx_hash: str,
        direction: MessageDirection = MessageDirection.L2_TO_L1,
    ) -> list[CrossChainMessage]:
        """Return the messages sent by a transaction, in log order."""
        ...


class MessageStatusOracle(Protocol):
    """Finalization status of messages and state batches."""

    async def get_message_status(self, message: CrossChainMessage) -> StatusReport:
        ...

    async def inside_challenge_window(self, header: BatchHeader) -> bool:
        """Whether the batch can still be challenged."""
        ...


class GasEstimator(Protocol):
    """Dry-run gas estimation on the destination chain.

    Implementations raise ``AlreadyDeliveredError`` when the message was
    already received, ``GasAllowanceExceededError`` when the node rejects the
    estimate for exceeding its allowance and ``GasEstimationError`` otherwise.
    """

    async def estimate_finalize_gas(self, message: CrossChainMessage) -> int:
        ...

    async def estimate_aggregate_gas(self, calls: Sequence[Call]) -> int:
        ...


class TransactionSubmitter(Protocol):
    """Destination-chain transaction submission and confirmation."""

    async def get_finalize_call(self, message: CrossChainMessage) -> Call:
        """Build the destination call that delivers ``message``."""
        ...

    async def finalize_message(self, message: CrossChainMessage, gas_limit: int) -> str:
        """Send the delivery transaction and return its hash."""
        ...

    async def submit_aggregate(self, calls: Sequence[Call], gas_limit: int) -> str:
        """Send one aggregator transaction carrying all ``calls``."""
        ...

    async def wait_for_confirmation(self, tx_hash: str, timeout: float, poll_interval: float) -> None:
        ...

    async def wait_for_message_receipt(
        self,
        message: CrossChainMessage,
        timeout: float,
        poll_interval: float,
    ) -> None:
        """Wait until the message is observed as received on the destination chain."""
        ...
