"""Custom exceptions for the shielded pool."""


class ZKPoolException(Exception):
    """Base exception for all shielded pool errors."""
    pass


# Input Errors
class ValidationError(ZKPoolException):
    """Raised when caller input is malformed or ambiguous."""
    pass


class TreeFullError(ValidationError):
    """Raised when the accumulator has no free leaf left."""
    pass


class DuplicateCommitmentError(ValidationError):
    """Raised when a commitment is appended to the tree twice."""
    pass


class InvalidTransitionError(ValidationError):
    """Raised when a submission moves to a state it cannot reach."""
    pass


# Accumulator Errors
class RootMismatchError(ZKPoolException):
    """Raised when a supplied root differs from the locally recomputed one.

    Never retried automatically; the caller has to prepare again.
    """
    pass


# Ledger Errors
class DecodeError(ZKPoolException):
    """Raised when an on-chain event payload cannot be parsed."""
    pass


class DoubleSpendError(ZKPoolException):
    """Raised when attempting to spend the same note twice."""
    pass


class NotFoundError(ZKPoolException):
    """Raised when a commitment, record or submission is unknown."""
    pass


# Transport Errors
class TransientTransportError(ZKPoolException):
    """Raised when a remote call timed out or the connection dropped."""
    pass


# Integrity Errors
class IntegrityError(ZKPoolException):
    """Raised when a circuit artifact or digest does not match."""
    pass


# Storage Errors
class StorageError(ZKPoolException):
    """Raised when the row store rejects a read or write."""
    pass


# Message Errors
class DuplicateMessageError(ZKPoolException):
    """Raised when the same ciphertext is posted to a recipient twice."""
    pass


class DecryptionError(ZKPoolException):
    """Raised when a note envelope cannot be opened with the given key."""
    pass
