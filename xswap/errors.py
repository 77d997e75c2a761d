"""
Error taxonomy for xswap.

Every error carries a stable ``kind`` (used by the HTTP layer and in
history entries) and a ``retryable`` hint:

- ValidationError:       malformed or missing input. Never retried.
- RangeError:            timelock offset outside uint32 (a ValidationError).
- PreconditionError:     wrong caller / too early / missing secret.
                         Retryable later, not now.
- StateTransitionError:  illegal monitor or swap move.
- ChainSubmissionError:  RPC / network failure. Retryable with backoff.
- ConfirmationTimeout:   confirmation wait exceeded its timeout.
- ChainRevertError:      on-chain execution failed. Not retried automatically.
- EncodingMismatchError: hashlock and condition disagree. Fatal config bug.
- PersistenceError:      store unavailable. Retried with backoff.
- RecordNotFound:        store lookup miss.
"""

from typing import Optional, Dict, Any


class SwapError(Exception):
    """Base class for all xswap errors."""
    kind = "SwapError"
    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(SwapError):
    kind = "ValidationError"


class RangeError(ValidationError):
    kind = "RangeError"


class PreconditionError(SwapError):
    """A resolution precondition is not met yet.

    ``check`` names the failing precondition: ``wrong_caller``,
    ``too_early``, ``missing_secret``, ``leg_closed``, ``in_flight`` or
    ``not_locked``.
    """
    kind = "PreconditionError"
    retryable = True

    def __init__(self, message: str, check: str, **details):
        super().__init__(message, check=check, **details)
        self.check = check


class StateTransitionError(SwapError):
    kind = "StateTransitionError"


class ChainSubmissionError(SwapError):
    kind = "ChainSubmissionError"
    retryable = True


class ConfirmationTimeout(ChainSubmissionError):
    kind = "ConfirmationTimeout"

    def __init__(self, message: str, tx_hash: Optional[str] = None, **details):
        super().__init__(message, tx_hash=tx_hash, **details)
        self.tx_hash = tx_hash


class ChainRevertError(SwapError):
    kind = "ChainRevertError"

    def __init__(self, message: str, reason: Optional[str] = None,
                 tx_hash: Optional[str] = None, **details):
        super().__init__(message, reason=reason, tx_hash=tx_hash, **details)
        self.reason = reason
        self.tx_hash = tx_hash


class EncodingMismatchError(SwapError):
    kind = "EncodingMismatchError"


class PersistenceError(SwapError):
    kind = "PersistenceError"
    retryable = True


class RecordNotFound(PersistenceError):
    kind = "NotFound"
    retryable = False
