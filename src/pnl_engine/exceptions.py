"""Custom exceptions for the P&L reconstruction engine.

Data-quality problems (bad numbers, ledger underflow, missing snapshots)
are never raised from the core fold; they are coerced, clamped or
defaulted and logged. The exceptions here cover programming and
input-contract errors at the edges.
"""


class EngineError(Exception):
    """Base exception for all engine errors."""


class UnknownEventTypeError(EngineError):
    """Raised when a raw payload names an event kind the engine does not model."""


class InvalidAccountError(EngineError):
    """Raised when an account identifier is empty or malformed."""


class MalformedEventError(EngineError):
    """Raised when a raw record cannot be placed in the event log (no usable timestamp)."""
