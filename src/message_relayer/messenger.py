"""
Web3 adapter for an OVM-style rollup deployment.

This module implements the relay core's capability protocols against live
nodes: blocks and ``SentMessage`` events are read from the L2 provider, state
batches and delivery status from the L1 contracts, and relay transactions are
signed and sent on L1 through the configured key.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from eth_abi import decode as abi_decode
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import BlockNotFound, TimeExhausted
from web3.logs import DISCARD
from web3.types import TxReceipt

from .config import RelayerConfig
from .errors import (
    AlreadyDeliveredError,
    ConfirmationTimeoutError,
    ProofError,
    RelayerError,
    SubmissionError,
    translate_estimation_error,
    translate_submission_error,
)
from .models import (
    BatchHeader,
    Call,
    CrossChainMessage,
    MessageDirection,
    MessageStatus,
    SourceBlock,
    StatusReport,
)
from .utils.contract_utility import ContractUtility
from .utils.message_encoder import MessageEncoder

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

L1_MESSENGER_NAME = "Proxy__OVM_L1CrossDomainMessenger"
STATE_COMMITMENT_CHAIN_NAME = "StateCommitmentChain"


@dataclass(frozen=True, slots=True)
class StateBatch:
    """A published state batch together with its state roots."""

    header: BatchHeader
    state_roots: tuple[bytes, ...]

    @property
    def timestamp(self) -> int:
        # extraData = abi.encode(timestamp, proposer)
        timestamp, _proposer = abi_decode(['uint256', 'address'], self.header.extra_data)
        return timestamp


class Web3Messenger:
    """Source chain, status oracle, gas estimator and submitter over web3.py."""

    MAX_CACHED_BATCHES: int = 100
    MAX_CACHED_PROOFS: int = 1_000

    def __init__(
        self,
        l1_util: ContractUtility,
        l2_util: ContractUtility,
        config: RelayerConfig,
    ) -> None:
        """
        Initialize the Web3Messenger.

        Args:
            l1_util: Signing contract utility for the destination chain
            l2_util: Read-only contract utility for the source chain
            config: Relayer configuration with resolved L1 addresses
        """
        destination = config.destination_chain
        if not destination.contracts_resolved:
            raise ValueError("L1 contract addresses must be resolved before connecting")

        self.l1_util = l1_util
        self.l2_util = l2_util
        self.l1: Web3 = l1_util.w3
        self.l2: Web3 = l2_util.w3
        self.log_chunk_size = config.relay.log_chunk_size

        self.l2_messenger_address: str = config.source_chain.messenger_address
        self.message_passer_address: str = config.source_chain.message_passer_address

        self.l2_messenger: Contract = l2_util.get_contract(
            "L2CrossDomainMessenger", self.l2_messenger_address
        )
        self.l1_messenger: Contract = l1_util.get_contract(
            "L1CrossDomainMessenger", destination.l1_cross_domain_messenger
        )
        self.state_commitment_chain: Contract = l1_util.get_contract(
            "StateCommitmentChain", destination.state_commitment_chain
        )
        self.multicall: Contract | None = None
        if destination.multicall_address:
            self.multicall = l1_util.get_contract("Multicall2", destination.multicall_address)

        self._fraud_proof_window: int | None = None
        # Batches and proofs keyed by batch index / message, LRU eviction
        self._batches: OrderedDict[int, StateBatch] = OrderedDict()
        self._proofs: OrderedDict[tuple[str, int], tuple[Any, ...]] = OrderedDict()

        logger.info("Web3Messenger initialized")
        logger.info(f"  L1CrossDomainMessenger: {self.l1_messenger.address}")
        logger.info(f"  StateCommitmentChain: {self.state_commitment_chain.address}")
        if self.multicall is not None:
            logger.info(f"  Multicall: {self.multicall.address}")

    @classmethod
    def from_config(cls, config: RelayerConfig) -> "Web3Messenger":
        """
        Connect to both chains, resolving L1 addresses if needed.

        Args:
            config: Relayer configuration

        Returns:
            Connected Web3Messenger instance

        Raises:
            ValueError: If the address manager does not know a contract
        """
        destination = config.destination_chain
        timeout = config.relay.request_timeout

        l1_util = ContractUtility(destination.rpc_url, destination.private_key, request_timeout=timeout)
        l2_util = ContractUtility(config.source_chain.rpc_url, request_timeout=timeout)

        if not destination.contracts_resolved:
            manager = l1_util.get_contract("Lib_AddressManager", destination.address_manager)
            l1_messenger = destination.l1_cross_domain_messenger or _resolve(manager, L1_MESSENGER_NAME)
            state_commitment_chain = destination.state_commitment_chain or _resolve(
                manager, STATE_COMMITMENT_CHAIN_NAME
            )
            config = config.with_contracts(l1_messenger, state_commitment_chain)

        return cls(l1_util, l2_util, config)

    # --- SourceChain ---

    async def get_block_number(self) -> int:
        return self.l2.eth.block_number

    async def get_block(self, number: int) -> SourceBlock | None:
        try:
            block = self.l2.eth.get_block(number)
        except BlockNotFound:
            return None

        return SourceBlock(
            number=block['number'],
            transactions=tuple(Web3.to_hex(tx) for tx in block['transactions']),
        )

    async def get_messages_by_transaction(
        self,
        tx_hash: str,
        direction: MessageDirection = MessageDirection.L2_TO_L1,
    ) -> list[CrossChainMessage]:
        """
        Decode the messages a source transaction sent through the L2 messenger.

        Args:
            tx_hash: Source transaction hash
            direction: Only L2_TO_L1 is supported

        Returns:
            Messages in log order
        """
        if direction is not MessageDirection.L2_TO_L1:
            raise ValueError(f"Unsupported message direction: {direction.value}")

        receipt = self.l2.eth.get_transaction_receipt(tx_hash)
        events = self.l2_messenger.events.SentMessage().process_receipt(receipt, errors=DISCARD)

        messages = []
        for event in events:
            # Other contracts may emit an event with the same signature
            if event['address'] != self.l2_messenger_address:
                continue

            args = event['args']
            messages.append(CrossChainMessage(
                direction=direction,
                tx_hash=tx_hash,
                block_number=receipt['blockNumber'],
                index=len(messages),
                target=args['target'],
                sender=args['sender'],
                message=Web3.to_hex(args['message']),
                message_nonce=args['messageNonce'],
                gas_limit=args['gasLimit'],
            ))
        return messages

    # --- MessageStatusOracle ---

    async def get_message_status(self, message: CrossChainMessage) -> StatusReport:
        """
        Coarse finalization status of a message.

        The challenge window is compared against the latest L1 timestamp,
        which lags real time, so callers should confirm IN_CHALLENGE_WINDOW
        with ``inside_challenge_window``.
        """
        if self._is_delivered(message):
            return StatusReport(MessageStatus.ALREADY_DELIVERED)

        batch = self._find_batch(_state_root_index(message))
        if batch is None:
            return StatusReport(MessageStatus.PENDING_PUBLICATION)

        latest = self.l1.eth.get_block('latest')
        if batch.timestamp + self._get_fraud_proof_window() > latest['timestamp']:
            return StatusReport(MessageStatus.IN_CHALLENGE_WINDOW, batch.header)
        return StatusReport(MessageStatus.FINAL, batch.header)

    async def inside_challenge_window(self, header: BatchHeader) -> bool:
        return self.state_commitment_chain.functions.insideFraudProofWindow(header.to_tuple()).call()

    def _is_delivered(self, message: CrossChainMessage) -> bool:
        calldata = MessageEncoder.encode_xdomain_calldata(
            message.target, message.sender, message.message, message.message_nonce
        )
        return self.l1_messenger.functions.successfulMessages(MessageEncoder.message_hash(calldata)).call()

    def _get_fraud_proof_window(self) -> int:
        if self._fraud_proof_window is None:
            self._fraud_proof_window = self.state_commitment_chain.functions.FRAUD_PROOF_WINDOW().call()
            logger.info(f"Fraud proof window: {self._fraud_proof_window} seconds")
        return self._fraud_proof_window

    # --- State batches ---

    def _cache_batch(self, batch: StateBatch) -> None:
        self._batches[batch.header.batch_index] = batch
        self._batches.move_to_end(batch.header.batch_index)
        if len(self._batches) > self.MAX_CACHED_BATCHES:
            self._batches.popitem(last=False)

    def _find_batch(self, element_index: int) -> StateBatch | None:
        """
        Locate the published state batch holding a state root index.

        Returns:
            The batch, or None if the index is not published yet
        """
        for batch in reversed(self._batches.values()):
            if batch.header.contains(element_index):
                self._batches.move_to_end(batch.header.batch_index)
                return batch

        total_elements = self.state_commitment_chain.functions.getTotalElements().call()
        if element_index >= total_elements:
            return None

        event = self._find_batch_event(element_index)
        if event is None:
            logger.warning(
                f"No StateBatchAppended event covers state root {element_index} "
                f"although {total_elements} roots are published"
            )
            return None

        args = event['args']
        header = BatchHeader(
            batch_index=args['_batchIndex'],
            batch_root=bytes(args['_batchRoot']),
            batch_size=args['_batchSize'],
            prev_total_elements=args['_prevTotalElements'],
            extra_data=bytes(args['_extraData']),
        )
        batch = StateBatch(header=header, state_roots=self._get_state_roots(event['transactionHash'], header))
        self._cache_batch(batch)
        return batch

    def _find_batch_event(self, element_index: int) -> Any | None:
        """Scan StateBatchAppended logs backwards from the L1 tip."""
        event_type = self.state_commitment_chain.events.StateBatchAppended()
        to_block = self.l1.eth.block_number

        while to_block >= 0:
            from_block = max(0, to_block - self.log_chunk_size + 1)
            logger.debug(f"Scanning StateBatchAppended logs in L1 blocks {from_block} ~ {to_block}")
            events = event_type.get_logs(from_block=from_block, to_block=to_block)

            for event in reversed(events):
                args = event['args']
                start = args['_prevTotalElements']
                if start <= element_index < start + args['_batchSize']:
                    return event

            to_block = from_block - 1
        return None

    def _get_state_roots(self, tx_hash: Any, header: BatchHeader) -> tuple[bytes, ...]:
        tx = self.l1.eth.get_transaction(tx_hash)
        _func, params = self.state_commitment_chain.decode_function_input(tx['input'])

        state_roots = tuple(bytes(root) for root in params['_batch'])
        if len(state_roots) != header.batch_size:
            raise ProofError(
                f"Batch {header.batch_index} has {len(state_roots)} state roots, "
                f"expected {header.batch_size}"
            )
        return state_roots

    # --- Proofs ---

    def _get_proof(self, message: CrossChainMessage) -> tuple[Any, ...]:
        """
        Build the inclusion proof of a message, cached per message.

        Raises:
            ProofError: If the batch is not published or the proof does not verify
        """
        key = message.unique_key
        if key in self._proofs:
            self._proofs.move_to_end(key)
            return self._proofs[key]

        element_index = _state_root_index(message)
        batch = self._find_batch(element_index)
        if batch is None:
            raise ProofError(f"State root {element_index} of {message} is not published yet")

        header = batch.header
        leaf_index = element_index - header.prev_total_elements
        state_root = batch.state_roots[leaf_index]

        if MessageEncoder.merkle_root(batch.state_roots) != header.batch_root:
            raise ProofError(f"State roots of batch {header.batch_index} do not match its batch root")
        siblings = MessageEncoder.make_merkle_proof(batch.state_roots, leaf_index)

        calldata = MessageEncoder.encode_xdomain_calldata(
            message.target, message.sender, message.message, message.message_nonce
        )
        slot = MessageEncoder.message_storage_slot(calldata, self.l2_messenger_address)
        account_proof = self.l2.eth.get_proof(
            self.message_passer_address,
            [int.from_bytes(slot, 'big')],
            message.block_number,
        )

        storage_nodes = account_proof['storageProof'][0]['proof']
        storage_root = MessageEncoder.verify_account_proof(
            state_root, self.message_passer_address, account_proof['accountProof']
        )
        MessageEncoder.verify_storage_proof(storage_root, slot, storage_nodes)

        proof = (
            state_root,
            header.to_tuple(),
            (leaf_index, siblings),
            MessageEncoder.encode_witness(account_proof['accountProof']),
            MessageEncoder.encode_witness(storage_nodes),
        )
        logger.debug(f"Built proof for {message} in batch {header.batch_index}")

        self._proofs[key] = proof
        if len(self._proofs) > self.MAX_CACHED_PROOFS:
            self._proofs.popitem(last=False)
        return proof

    def _forget_proof(self, message: CrossChainMessage) -> None:
        """Drop the cached proof of a message and the batch it was built from."""
        self._proofs.pop(message.unique_key, None)
        element_index = _state_root_index(message)
        for batch_index, batch in list(self._batches.items()):
            if batch.header.contains(element_index):
                del self._batches[batch_index]

    def _relay_function(self, message: CrossChainMessage) -> Any:
        return self.l1_messenger.functions.relayMessage(
            message.target,
            message.sender,
            Web3.to_bytes(hexstr=message.message),
            message.message_nonce,
            self._get_proof(message),
        )

    def _aggregate_function(self, calls: Sequence[Call]) -> Any:
        if self.multicall is None:
            raise ValueError("No multicall address configured, aggregate mode is disabled")
        return self.multicall.functions.tryAggregate(True, [call.to_tuple() for call in calls])

    # --- GasEstimator ---

    async def estimate_finalize_gas(self, message: CrossChainMessage) -> int:
        try:
            return self._relay_function(message).estimate_gas({'from': self.l1_util.account.address})
        except RelayerError:
            raise
        except Exception as e:
            error = translate_estimation_error(e)
            if not isinstance(error, AlreadyDeliveredError):
                # The proof may be stale after a reorg, rebuild it on the next try
                self._forget_proof(message)
            raise error from e

    async def estimate_aggregate_gas(self, calls: Sequence[Call]) -> int:
        try:
            return self._aggregate_function(calls).estimate_gas({'from': self.l1_util.account.address})
        except RelayerError:
            raise
        except Exception as e:
            raise translate_estimation_error(e) from e

    # --- TransactionSubmitter ---

    async def get_finalize_call(self, message: CrossChainMessage) -> Call:
        call_data = self.l1_messenger.encode_abi(
            "relayMessage",
            args=[
                message.target,
                message.sender,
                Web3.to_bytes(hexstr=message.message),
                message.message_nonce,
                self._get_proof(message),
            ],
        )
        return Call(target=self.l1_messenger.address, call_data=call_data)

    async def finalize_message(self, message: CrossChainMessage, gas_limit: int) -> str:
        try:
            tx_hash = self._relay_function(message).transact({'gas': gas_limit})
        except RelayerError:
            raise
        except Exception as e:
            raise translate_submission_error(e) from e

        logger.info(f"Relay transaction sent for {message}: {Web3.to_hex(tx_hash)}")
        return Web3.to_hex(tx_hash)

    async def submit_aggregate(self, calls: Sequence[Call], gas_limit: int) -> str:
        try:
            tx_hash = self._aggregate_function(calls).transact({'gas': gas_limit})
        except RelayerError:
            raise
        except Exception as e:
            raise translate_submission_error(e) from e

        logger.info(f"Aggregate transaction sent with {len(calls)} call(s): {Web3.to_hex(tx_hash)}")
        return Web3.to_hex(tx_hash)

    async def wait_for_confirmation(self, tx_hash: str, timeout: float, poll_interval: float) -> None:
        """
        Wait for a transaction receipt on the destination chain.

        Raises:
            ConfirmationTimeoutError: If no receipt arrives within ``timeout``
            SubmissionError: If the transaction reverted
        """
        try:
            receipt: TxReceipt = self.l1.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=poll_interval
            )
        except TimeExhausted as e:
            raise ConfirmationTimeoutError(f"Transaction {tx_hash} not mined after {timeout}s") from e

        if (status := receipt.get('status', 0)) != 1:
            raise SubmissionError(f"Transaction {tx_hash} reverted with status={status}")
        logger.info(f"Transaction confirmed in block {receipt['blockNumber']}: {tx_hash}")

    async def wait_for_message_receipt(
        self,
        message: CrossChainMessage,
        timeout: float,
        poll_interval: float,
    ) -> None:
        """
        Poll the destination messenger until the message is marked received.

        Raises:
            ConfirmationTimeoutError: If the message is not received within ``timeout``
        """
        deadline = time.monotonic() + timeout
        while not self._is_delivered(message):
            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(f"{message} not received after {timeout}s")
            await asyncio.sleep(poll_interval)
        logger.info(f"Message received on L1: {message}")


def _state_root_index(message: CrossChainMessage) -> int:
    # One transaction per L2 block, and the genesis block has none
    return message.block_number - 1


def _resolve(manager: Contract, name: str) -> str:
    address = manager.functions.getAddress(name).call()
    if not address or address == ZERO_ADDRESS:
        raise ValueError(f"Address manager has no address for {name}")
    logger.info(f"Resolved {name} from address manager: {address}")
    return address
