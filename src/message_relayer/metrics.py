"""In-process metrics for the message relayer."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class Gauge:
    """A value that can go up and down."""

    name: str
    description: str
    value: int = 0

    def set(self, value: int) -> None:
        self.value = value


@dataclass
class Counter:
    """A monotonically increasing count."""

    name: str
    description: str
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError(f"Counter {self.name} can only increase, got {amount}")
        self.value += amount


class RelayerMetrics:
    """Cursor position, known tip and relay count of one relayer instance."""

    def __init__(self) -> None:
        self.highest_checkable_block = Gauge(
            "highest_checkable_block",
            "Next source block the relayer will check",
        )
        self.highest_known_block = Gauge(
            "highest_known_block",
            "Highest known source block",
        )
        self.relayed_messages = Counter(
            "relayed_messages",
            "Number of messages relayed by the service",
        )

    def get_metrics(self) -> dict[str, int]:
        """Get current metric values.

        Returns:
            Dictionary of metric names to values
        """
        return {
            self.highest_checkable_block.name: self.highest_checkable_block.value,
            self.highest_known_block.name: self.highest_known_block.value,
            self.relayed_messages.name: self.relayed_messages.value,
        }

    def log_metrics(self) -> None:
        """Log current metric values."""
        metrics = self.get_metrics()
        logger.info(
            f"Relayer Metrics: "
            f"Checkable={metrics['highest_checkable_block']}, "
            f"Known={metrics['highest_known_block']}, "
            f"Relayed={metrics['relayed_messages']}"
        )
