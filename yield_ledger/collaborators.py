"""
External Collaborators

Interfaces the yield ledger consumes (token balances, value custody and
access control) plus storage-backed reference implementations so a ledger
can run end to end. Reference implementations keep their state in the same
storage backend as the ledger, so an aborted operation rolls them back too.
"""

from abc import ABC, abstractmethod
from typing import Callable, Iterable, Optional, Set

from .errors import PreconditionError
from .storage import StorageInterface


ZERO_ADDRESS = "0x" + "0" * 40

BalanceHook = Callable[[str, str, int], None]


def is_zero_address(account: Optional[str]) -> bool:
    return not account or account == ZERO_ADDRESS


class TokenLedger(ABC):
    """Fungible token balances"""

    @abstractmethod
    def balance_of(self, holder: str) -> int:
        pass

    @abstractmethod
    def total_supply(self) -> int:
        pass

    @abstractmethod
    def update(self, sender: str, recipient: str, amount: int) -> None:
        """
        Move tokens. ZERO_ADDRESS as sender mints, as recipient burns.
        The balance hook runs before any balance is changed.
        """
        pass

    @abstractmethod
    def set_balance_hook(self, hook: Optional[BalanceHook]) -> None:
        pass


class ValueTransfer(ABC):
    """Custody of the yield asset"""

    @abstractmethod
    def move_in(self, account: str, amount: int) -> bool:
        """Pull amount from account into custody; False on failure"""
        pass

    @abstractmethod
    def move_out(self, account: str, amount: int) -> bool:
        """Pay amount from custody to account; False on failure"""
        pass


class AccessControl(ABC):
    """Gate for administrative operations"""

    @abstractmethod
    def is_authorized(self, caller: str) -> bool:
        pass


class StorageTokenLedger(TokenLedger):
    """Token balances kept in a storage table"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.balances_table = "token_balances"
        self.supply_table = "token_supply"
        self._hook: Optional[BalanceHook] = None

    def set_balance_hook(self, hook: Optional[BalanceHook]) -> None:
        self._hook = hook

    def balance_of(self, holder: str) -> int:
        data = self.storage.load(self.balances_table, holder)
        return int(data['balance']) if data else 0

    def total_supply(self) -> int:
        data = self.storage.load(self.supply_table, "supply")
        return int(data['total_supply']) if data else 0

    def update(self, sender: str, recipient: str, amount: int) -> None:
        if amount < 0:
            raise PreconditionError(f"Transfer amount must not be negative: {amount}")
        if is_zero_address(sender) and is_zero_address(recipient):
            raise PreconditionError("Cannot transfer from and to the zero address")
        if not is_zero_address(sender) and self.balance_of(sender) < amount:
            raise PreconditionError(
                f"Insufficient balance for {sender}: {self.balance_of(sender)} < {amount}"
            )

        if self._hook is not None:
            self._hook(sender, recipient, amount)

        if is_zero_address(sender):
            self._set_supply(self.total_supply() + amount)
        else:
            self._set_balance(sender, self.balance_of(sender) - amount)

        if is_zero_address(recipient):
            self._set_supply(self.total_supply() - amount)
        else:
            self._set_balance(recipient, self.balance_of(recipient) + amount)

    def _set_balance(self, holder: str, balance: int) -> None:
        self.storage.save(self.balances_table, holder, {'holder': holder, 'balance': str(balance)})

    def _set_supply(self, supply: int) -> None:
        self.storage.save(self.supply_table, "supply", {'total_supply': str(supply)})


class StorageCustody(ValueTransfer):
    """
    Yield-asset custody: per-account external funds plus the pooled
    amount held on behalf of holders.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "custody_funds"

    def funds_of(self, account: str) -> int:
        data = self.storage.load(self.table_name, account)
        return int(data['funds']) if data else 0

    def custody_balance(self) -> int:
        return self.funds_of(self._pool_id())

    def fund(self, account: str, amount: int) -> None:
        """Credit external funds to an account (faucet for tests and demos)"""
        if amount < 0:
            raise PreconditionError(f"Funding amount must not be negative: {amount}")
        self._set(account, self.funds_of(account) + amount)

    def move_in(self, account: str, amount: int) -> bool:
        available = self.funds_of(account)
        if available < amount:
            return False
        self._set(account, available - amount)
        self._set(self._pool_id(), self.custody_balance() + amount)
        return True

    def move_out(self, account: str, amount: int) -> bool:
        pooled = self.custody_balance()
        if pooled < amount:
            return False
        self._set(self._pool_id(), pooled - amount)
        self._set(account, self.funds_of(account) + amount)
        return True

    @staticmethod
    def _pool_id() -> str:
        return "__custody__"

    def _set(self, account: str, funds: int) -> None:
        self.storage.save(self.table_name, account, {'account': account, 'funds': str(funds)})


class AllowListAccessControl(AccessControl):
    """Authorizes a fixed set of administrator accounts"""

    def __init__(self, admins: Iterable[str] = ()):
        self._admins: Set[str] = set(admins)

    def grant(self, account: str) -> None:
        self._admins.add(account)

    def revoke(self, account: str) -> None:
        self._admins.discard(account)

    def is_authorized(self, caller: str) -> bool:
        return caller in self._admins
