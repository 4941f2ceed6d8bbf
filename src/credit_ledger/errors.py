from __future__ import annotations

from typing import Any, Dict


class CreditLedgerError(Exception):
    """Base class for every failure the ledger raises on purpose."""

    code: str = "CREDIT_LEDGER_ERROR"

    def details(self) -> Dict[str, Any]:
        return {}


class UserNotFound(CreditLedgerError, LookupError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: str) -> None:
        super().__init__(f"user {user_id!r} not found")
        self.user_id = user_id

    def details(self) -> Dict[str, Any]:
        return {"user_id": self.user_id}


class InvalidAmount(CreditLedgerError, ValueError):
    code = "INVALID_AMOUNT"

    def __init__(self, amount: Any, message: str = "amount must be a positive integer") -> None:
        super().__init__(message)
        self.amount = amount

    def details(self) -> Dict[str, Any]:
        return {"amount": self.amount}


class InvalidSourceType(CreditLedgerError, ValueError):
    code = "INVALID_SOURCE_TYPE"

    def __init__(self, source_type: Any) -> None:
        super().__init__(f"unknown grant source type {source_type!r}")
        self.source_type = source_type

    def details(self) -> Dict[str, Any]:
        return {"source_type": str(self.source_type)}


class InsufficientCredits(CreditLedgerError, ValueError):
    """
    The user's balance does not cover the cost. Expected and user-facing.
    """

    code = "INSUFFICIENT_CREDITS"

    def __init__(self, user_id: str, requested: int, balance: int) -> None:
        super().__init__("insufficient credits")
        self.user_id = user_id
        self.requested = requested
        self.balance = balance

    def details(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "requested": self.requested, "balance": self.balance}


class LedgerDesync(CreditLedgerError):
    """
    The cached balance covered the cost but the live grants did not.
    Signals a bug elsewhere; never recovered from locally.
    """

    code = "LEDGER_DESYNC"

    def __init__(self, user_id: str, requested: int, balance: int, covered: int) -> None:
        super().__init__(
            f"ledger desync for user {user_id!r}: balance {balance} "
            f"but live grants cover only {covered} of {requested}"
        )
        self.user_id = user_id
        self.requested = requested
        self.balance = balance
        self.covered = covered

    def details(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "requested": self.requested,
            "balance": self.balance,
            "covered": self.covered,
        }


class TransactionConflict(CreditLedgerError):
    """
    The store detected a concurrent write. Transient; retrying is up to the caller.
    """

    code = "TRANSACTION_CONFLICT"


class UserAlreadyExists(CreditLedgerError):
    code = "USER_ALREADY_EXISTS"

    def __init__(self, user_id: str) -> None:
        super().__init__(f"user {user_id!r} already exists")
        self.user_id = user_id

    def details(self) -> Dict[str, Any]:
        return {"user_id": self.user_id}
