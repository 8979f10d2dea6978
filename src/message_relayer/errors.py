"""Error types raised by the message relayer.

Errors fall into three groups. Fatal errors stop the relay loop and are
surfaced to the operator. Retryable errors end the current tick without
moving the cursor. ``AlreadyDeliveredError`` signals an idempotent no-op:
somebody else already relayed the message.
"""

# Substrings reported by nodes and contracts for the known error classes.
ALREADY_DELIVERED_PATTERNS: tuple[str, ...] = (
    "message has already been received",
)
GAS_ALLOWANCE_PATTERNS: tuple[str, ...] = (
    "gas required exceeds allowance",
)


class RelayerError(Exception):
    """Base class for relayer errors."""

    retryable: bool = False


class ProtocolViolationError(RelayerError):
    """The source chain no longer matches the relayer's assumptions."""


class GasEstimationError(RelayerError):
    """Gas estimation failed for a reason the relayer does not recognise."""


class SubmissionError(RelayerError):
    """A destination transaction could not be sent or reverted."""


class ProofError(RelayerError):
    """Proof material for a message could not be built or verified."""


class AlreadyDeliveredError(RelayerError):
    """The message was already received on the destination chain."""


class GasAllowanceExceededError(RelayerError):
    """The estimated gas exceeds what the node allows for one transaction."""

    retryable = True


class ConfirmationTimeoutError(RelayerError):
    """A confirmation wait ran past its timeout."""

    retryable = True


def _matches(exc: BaseException, patterns: tuple[str, ...]) -> bool:
    text = str(exc).lower()
    return any(pattern in text for pattern in patterns)


def is_already_delivered(exc: BaseException) -> bool:
    """Whether an error means the message was already relayed."""
    return isinstance(exc, AlreadyDeliveredError) or _matches(exc, ALREADY_DELIVERED_PATTERNS)


def is_gas_allowance_exceeded(exc: BaseException) -> bool:
    """Whether an error means the gas allowance of the node was exceeded."""
    return isinstance(exc, GasAllowanceExceededError) or _matches(exc, GAS_ALLOWANCE_PATTERNS)


def translate_estimation_error(exc: Exception) -> RelayerError:
    """Map a raw estimation failure to the relayer's error classes."""
    if isinstance(exc, RelayerError):
        return exc
    if is_already_delivered(exc):
        return AlreadyDeliveredError(str(exc))
    if is_gas_allowance_exceeded(exc):
        return GasAllowanceExceededError(str(exc))
    return GasEstimationError(f"Gas estimation failed: {exc}")


def translate_submission_error(exc: Exception) -> RelayerError:
    """Map a raw submission failure to the relayer's error classes."""
    if isinstance(exc, RelayerError):
        return exc
    if is_already_delivered(exc):
        return AlreadyDeliveredError(str(exc))
    return SubmissionError(f"Submission failed: {exc}")
