"""Shared fixtures for the message relayer tests."""

import pytest

from fakes import FakeChain

from message_relayer.classifier import FinalizationClassifier
from message_relayer.cursor import Cursor
from message_relayer.executor import SubmissionExecutor
from message_relayer.extractor import MessageExtractor
from message_relayer.metrics import RelayerMetrics
from message_relayer.planner import BatchPlanner
from message_relayer.scheduler import MessageRelayer


@pytest.fixture
def chain():
    """A fresh in-memory chain."""
    return FakeChain()


@pytest.fixture
def metrics():
    return RelayerMetrics()


@pytest.fixture
def build_relayer(chain, metrics):
    """Factory wiring a MessageRelayer to the fake chain."""

    def _build(
        aggregate: bool = False,
        start: int = 1,
        gas_ceiling: int = 1_000_000,
        gas_multiplier: float = 1.0,
        max_block_batch_size: int = 200,
    ) -> MessageRelayer:
        extractor = MessageExtractor(chain)
        classifier = FinalizationClassifier(chain)
        executor = SubmissionExecutor(
            estimator=chain,
            submitter=chain,
            metrics=metrics,
            gas_multiplier=gas_multiplier,
            receipt_timeout=1.0,
            poll_interval=0.01,
        )
        planner = None
        if aggregate:
            planner = BatchPlanner(
                extractor=extractor,
                classifier=classifier,
                estimator=chain,
                submitter=chain,
                gas_ceiling=gas_ceiling,
                gas_multiplier=gas_multiplier,
                max_block_batch_size=max_block_batch_size,
            )
        return MessageRelayer(
            source=chain,
            extractor=extractor,
            classifier=classifier,
            executor=executor,
            cursor=Cursor(next_position=start),
            metrics=metrics,
            planner=planner,
            poll_interval=0.01,
            idle_interval=0.01,
        )

    return _build
