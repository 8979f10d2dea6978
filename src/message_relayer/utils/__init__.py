"""Chain interaction and encoding utilities."""

from .contract_utility import ContractUtility
from .message_encoder import MessageEncoder

__all__ = ["ContractUtility", "MessageEncoder"]
