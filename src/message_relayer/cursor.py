"""Scan position over source-chain blocks."""

import logging
from dataclasses import dataclass

from .interfaces import SourceChain

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Cursor:
    """Next source block to scan and the last known chain tip.

    Owned by a single relay loop and only mutated between ticks.

    Attributes:
        next_position: Next block number to scan, never decreases
        known_tip: Source chain height as of the last refresh
    """

    next_position: int
    known_tip: int = 0

    def __post_init__(self) -> None:
        if self.next_position < 0:
            raise ValueError(f"Cursor position must be non-negative, got {self.next_position}")
        if self.known_tip < 0:
            raise ValueError(f"Known tip must be non-negative, got {self.known_tip}")

    def has_work(self) -> bool:
        """Whether there is at least one known block left to scan."""
        return self.next_position <= self.known_tip

    def advance(self, n: int) -> None:
        """Move the cursor forward by ``n`` blocks."""
        if n < 0:
            raise ValueError(f"Cursor can only move forward, got {n}")
        self.next_position += n

    async def refresh_tip(self, source: SourceChain) -> int:
        """Replace the known tip with the source chain's current height."""
        self.known_tip = await source.get_block_number()
        logger.debug(f"Known tip refreshed to {self.known_tip}")
        return self.known_tip
