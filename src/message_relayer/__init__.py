"""
Message Relayer package.

Relays finalized L2 -> L1 cross-domain messages of an optimistic rollup.
"""

from .config import RelayerConfig
from .messenger import Web3Messenger
from .models import CrossChainMessage, MessageStatus
from .scheduler import MessageRelayer, TickOutcome

__all__ = [
    "RelayerConfig",
    "MessageRelayer",
    "TickOutcome",
    "Web3Messenger",
    "CrossChainMessage",
    "MessageStatus",
]
__version__ = "0.1.0"
