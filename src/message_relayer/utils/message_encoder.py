"""
Message encoding utilities for the message relayer.

This module provides the encodings needed to prove an outbound message on the
destination chain: cross-domain calldata, message hashes and storage slots,
state root Merkle proofs and RLP-encoded trie witnesses.
"""

import logging
from collections.abc import Sequence
from typing import Union

import rlp
from eth_abi import encode as abi_encode
from hexbytes import HexBytes
from trie import HexaryTrie
from trie.exceptions import BadTrieProof, MissingTrieNode
from web3 import Web3

from ..errors import ProofError

logger = logging.getLogger(__name__)

RELAY_MESSAGE_SIGNATURE = "relayMessage(address,address,bytes,uint256)"

# Padding leaf of state root Merkle trees: keccak256(bytes32(0))
EMPTY_LEAF: bytes = bytes(Web3.keccak(b"\x00" * 32))


class MessageEncoder:
    """Utilities for encoding cross-domain messages and their proofs."""

    @staticmethod
    def to_bytes_safe(value: Union[HexBytes, bytes, str]) -> bytes:
        """
        Safely convert value to bytes, handling HexBytes, bytes, and hex strings.

        Args:
            value: Value to convert (HexBytes, bytes, or hex string)

        Returns:
            Bytes representation
        """
        if isinstance(value, HexBytes):
            return bytes(value)
        elif isinstance(value, bytes):
            return value
        else:
            return Web3.to_bytes(hexstr=value)

    @staticmethod
    def encode_xdomain_calldata(target: str, sender: str, message: Union[bytes, str], message_nonce: int) -> bytes:
        """
        Encode the calldata the source messenger records for a message.

        Args:
            target: Destination-chain target address
            sender: Source-chain sender address
            message: Message payload
            message_nonce: Messenger nonce

        Returns:
            ABI-encoded relayMessage(address,address,bytes,uint256) call
        """
        selector = bytes(Web3.keccak(text=RELAY_MESSAGE_SIGNATURE))[:4]
        arguments = abi_encode(
            ['address', 'address', 'bytes', 'uint256'],
            [
                Web3.to_checksum_address(target),
                Web3.to_checksum_address(sender),
                MessageEncoder.to_bytes_safe(message),
                message_nonce,
            ],
        )
        return selector + arguments

    @staticmethod
    def message_hash(xdomain_calldata: bytes) -> bytes:
        """Hash identifying a message on the destination messenger."""
        return bytes(Web3.keccak(xdomain_calldata))

    @staticmethod
    def message_storage_slot(xdomain_calldata: bytes, messenger_address: str) -> bytes:
        """
        Storage slot of the message in the message passer's sentMessages mapping.

        The mapping lives at slot 0 and is keyed by
        keccak256(calldata ++ messenger address).
        """
        key = Web3.keccak(xdomain_calldata + Web3.to_bytes(hexstr=messenger_address))
        return bytes(Web3.keccak(bytes(key) + b"\x00" * 32))

    @staticmethod
    def _pad_leaves(leaves: Sequence[bytes]) -> list[bytes]:
        if not leaves:
            raise ProofError("Cannot build a Merkle tree without leaves")
        size = 1 << (len(leaves) - 1).bit_length()
        return [bytes(leaf) for leaf in leaves] + [EMPTY_LEAF] * (size - len(leaves))

    @staticmethod
    def merkle_root(leaves: Sequence[bytes]) -> bytes:
        """
        Compute the Merkle root of state roots, padding to a power of two.

        Args:
            leaves: 32-byte state roots

        Returns:
            32-byte root
        """
        layer = MessageEncoder._pad_leaves(leaves)
        while len(layer) > 1:
            layer = [
                bytes(Web3.keccak(layer[i] + layer[i + 1]))
                for i in range(0, len(layer), 2)
            ]
        return layer[0]

    @staticmethod
    def make_merkle_proof(leaves: Sequence[bytes], index: int) -> list[bytes]:
        """
        Build the sibling path proving ``leaves[index]``.

        Args:
            leaves: 32-byte state roots of a batch
            index: Position of the proven leaf

        Returns:
            Siblings ordered from the leaf level up
        """
        if not 0 <= index < len(leaves):
            raise ProofError(f"Leaf index {index} out of range for {len(leaves)} leaves")

        layer = MessageEncoder._pad_leaves(leaves)
        siblings: list[bytes] = []
        while len(layer) > 1:
            siblings.append(layer[index ^ 1])
            layer = [
                bytes(Web3.keccak(layer[i] + layer[i + 1]))
                for i in range(0, len(layer), 2)
            ]
            index //= 2
        return siblings

    @staticmethod
    def encode_witness(proof_nodes: Sequence[Union[HexBytes, bytes, str]]) -> bytes:
        """RLP-encode an eth_getProof node list as a trie witness."""
        return rlp.encode([MessageEncoder.to_bytes_safe(node) for node in proof_nodes])

    @staticmethod
    def _get_from_proof(root: bytes, key: bytes, proof_nodes: Sequence[Union[HexBytes, bytes, str]]) -> bytes:
        nodes = [rlp.decode(MessageEncoder.to_bytes_safe(node)) for node in proof_nodes]
        try:
            return HexaryTrie.get_from_proof(root, Web3.keccak(key), nodes)
        except (BadTrieProof, MissingTrieNode) as e:
            raise ProofError(f"Invalid trie proof: {e}") from e

    @staticmethod
    def verify_account_proof(
        state_root: bytes,
        address: str,
        proof_nodes: Sequence[Union[HexBytes, bytes, str]],
    ) -> bytes:
        """
        Check an account proof against a state root.

        Returns:
            The account's storage root

        Raises:
            ProofError: If the proof does not resolve to an account
        """
        encoded_account = MessageEncoder._get_from_proof(
            MessageEncoder.to_bytes_safe(state_root),
            Web3.to_bytes(hexstr=address),
            proof_nodes,
        )
        if not encoded_account:
            raise ProofError(f"Account {address} not found under state root {Web3.to_hex(state_root)}")

        # [nonce, balance, storageRoot, codeHash]
        account = rlp.decode(encoded_account)
        return bytes(account[2])

    @staticmethod
    def verify_storage_proof(
        storage_root: bytes,
        slot: bytes,
        proof_nodes: Sequence[Union[HexBytes, bytes, str]],
    ) -> bytes:
        """
        Check that a storage slot holds a non-zero value.

        Returns:
            RLP-encoded slot value

        Raises:
            ProofError: If the slot is empty or the proof is invalid
        """
        value = MessageEncoder._get_from_proof(
            MessageEncoder.to_bytes_safe(storage_root),
            slot,
            proof_nodes,
        )
        if not value:
            raise ProofError(f"Storage slot {Web3.to_hex(slot)} is empty, message was not sent")
        return value
