"""
Escrow error taxonomy.

Every failure the escrow engine can report is one of the exceptions below.
Each carries a stable ``code`` (used as the ``error`` field at the API
boundary) and a ``retryable`` flag telling the caller whether repeating the
same request can succeed without changing it.
"""

from typing import Optional


class EscrowError(Exception):
    """Base exception for escrow-related errors."""

    code = "escrow_error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        """Serialize the error for API responses."""
        return {
            "error": self.code,
            "detail": self.message,
            "retryable": self.retryable,
        }


class Unauthenticated(EscrowError):
    """Raised when no verified caller identity could be established."""

    code = "unauthenticated"


class Unauthorized(EscrowError):
    """Raised when a verified caller is not allowed to perform the action."""

    code = "unauthorized"


class EscrowNotFound(EscrowError):
    """Raised when an escrow or listing does not exist."""

    code = "not_found"


class InvalidState(EscrowError):
    """
    Raised when a transition is illegal from the escrow's current status.

    Attributes:
        current_state: Status of the escrow when the transition was refused
        attempted_action: Name of the refused action
    """

    code = "invalid_state"

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        attempted_action: Optional[str] = None
    ):
        super().__init__(message)
        self.current_state = current_state
        self.attempted_action = attempted_action

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["current_status"] = self.current_state
        data["attempted_action"] = self.attempted_action
        return data


class ValidationFailed(EscrowError):
    """Raised when request input is invalid (amounts, receipts, ownership)."""

    code = "validation_failed"


class TransferError(EscrowError):
    """Base exception for value-transfer collaborator failures."""

    code = "transfer_error"
    retryable = True


class TransferFailed(TransferError):
    """Raised when the transfer provider definitively refused a transfer."""

    code = "transfer_failed"


class TransferTimeout(TransferError):
    """Raised when a transfer outcome is unknown (timeout or provider outage)."""

    code = "transfer_timeout"


class DatabaseError(EscrowError):
    """Raised when the escrow store is unavailable or misconfigured."""

    code = "database_error"
    retryable = True
