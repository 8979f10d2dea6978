#!/usr/bin/env python3
"""Data models for the message relayer.

This module provides immutable data classes for the messages, blocks and
state batch headers the relayer works with, plus the finalization status enum
shared by the classifier and the chain adapters.
"""

from dataclasses import dataclass
from enum import Enum


class MessageDirection(Enum):
    """Direction of a cross-chain message."""

    L1_TO_L2 = "l1_to_l2"
    L2_TO_L1 = "l2_to_l1"


class MessageStatus(Enum):
    """Finalization status of an outbound message.

    Members are declared in lifecycle order; ``rank`` exposes that order so
    callers can detect a status that moved backwards.
    """

    PENDING_PUBLICATION = "pending_publication"
    IN_CHALLENGE_WINDOW = "in_challenge_window"
    FINAL = "final"
    ALREADY_DELIVERED = "already_delivered"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER: tuple[MessageStatus, ...] = tuple(MessageStatus)


@dataclass(frozen=True, slots=True)
class SourceBlock:
    """A source-chain block reduced to the transaction hashes it contains.

    Attributes:
        number: Block number on the source chain
        transactions: Transaction hashes in block order (0x-prefixed hex)
    """

    number: int
    transactions: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class CrossChainMessage:
    """An outbound message extracted from a source-chain transaction.

    Attributes:
        direction: Message direction (only L2_TO_L1 is relayed)
        tx_hash: Hash of the source transaction that sent the message
        block_number: Source block containing the transaction
        index: Position of the message among the transaction's messages
        target: Destination-chain address the message is delivered to
        sender: Source-chain address that sent the message
        message: Opaque payload (0x-prefixed hex)
        message_nonce: Messenger nonce assigned at send time
        gas_limit: Gas limit requested by the sender
    """

    direction: MessageDirection
    tx_hash: str
    block_number: int
    index: int
    target: str
    sender: str
    message: str
    message_nonce: int
    gas_limit: int = 0

    def __str__(self) -> str:
        """Human-readable string representation."""
        return (
            f"CrossChainMessage(tx={self.tx_hash[:10]}..., "
            f"index={self.index}, "
            f"block={self.block_number}, "
            f"nonce={self.message_nonce})"
        )

    @property
    def unique_key(self) -> tuple[str, int]:
        """Identity of the message: source transaction plus index within it."""
        return (self.tx_hash, self.index)


@dataclass(frozen=True, slots=True)
class BatchHeader:
    """Header of a state root batch committed on the destination chain.

    Attributes:
        batch_index: Sequential index of the batch
        batch_root: Merkle root over the batch's state roots
        batch_size: Number of state roots in the batch
        prev_total_elements: State roots committed before this batch
        extra_data: ABI-encoded (timestamp, proposer) attached at append time
    """

    batch_index: int
    batch_root: bytes
    batch_size: int
    prev_total_elements: int
    extra_data: bytes

    def contains(self, element_index: int) -> bool:
        """Whether the global state root index falls inside this batch."""
        return self.prev_total_elements <= element_index < self.prev_total_elements + self.batch_size

    def to_tuple(self) -> tuple[int, bytes, int, int, bytes]:
        """Convert to the positional form expected by the contract ABI."""
        return (
            self.batch_index,
            self.batch_root,
            self.batch_size,
            self.prev_total_elements,
            self.extra_data,
        )


@dataclass(frozen=True, slots=True)
class StatusReport:
    """Answer of the message-status oracle for one message.

    ``batch_header`` is set whenever the message's state root has been
    published, and is required for IN_CHALLENGE_WINDOW.
    """

    status: MessageStatus
    batch_header: BatchHeader | None = None


@dataclass(frozen=True, slots=True)
class Call:
    """A destination-chain call as carried by the aggregator contract."""

    target: str
    call_data: str

    def to_tuple(self) -> tuple[str, bytes]:
        """Convert to the (target, callData) struct expected by the aggregator ABI."""
        return (self.target, bytes.fromhex(self.call_data.removeprefix("0x")))
