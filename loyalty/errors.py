from typing import Optional


class LedgerError(Exception):
    code = "LedgerError"


class NotFoundError(LedgerError):
    code = "NotFound"


class ConflictError(LedgerError):
    code = "Conflict"


class ValidationError(LedgerError):
    code = "ValidationError"


class InvalidStatusTransitionError(ValidationError):
    pass


class NotMintableError(LedgerError):
    code = "NotMintable"


class InsufficientBalanceError(LedgerError):
    code = "InsufficientBalance"

    def __init__(self, message: str, balance: int = 0, required: int = 0):
        super().__init__(message)
        self.balance = balance
        self.required = required


class SettlementFailureError(LedgerError):
    """Settlement did not succeed; ``transaction`` is the record left in ``failed``."""

    code = "SettlementFailure"

    def __init__(self, message: str, transaction: Optional[object] = None):
        super().__init__(message)
        self.transaction = transaction
