"""
Error Taxonomy

Every failure aborts the whole operation and propagates to the caller.
"""


class YieldLedgerError(Exception):
    """Base class for all yield ledger failures"""


class PreconditionError(YieldLedgerError, ValueError):
    """Invalid input: zero address, negative amount, duplicate or missing entry"""


class TransferFailedError(YieldLedgerError):
    """The external value transfer collaborator reported failure"""

    def __init__(self, direction: str, account: str, amount: int):
        self.direction = direction
        self.account = account
        self.amount = amount
        super().__init__(f"Value transfer {direction} failed for {account}: {amount}")


class AccountingUnderflowError(YieldLedgerError, ArithmeticError):
    """An intermediary-held counter would go negative"""


class UnauthorizedError(YieldLedgerError, PermissionError):
    """Caller rejected by access control or not a registered intermediary"""
