"""
Delegation Registry

Intermediary accounts (e.g. an exchange venue holding tokens for makers)
and the beneficiaries their yield is redirected to. The registry is a
lookup table consulted at the end of settlement; it does not change how
holder state itself is computed.
"""

from typing import Optional

from .audit import AuditTrail, AuditEventType
from .collaborators import is_zero_address
from .errors import AccountingUnderflowError, PreconditionError, UnauthorizedError
from .logging_config import get_logger, log_action
from .storage import StorageInterface


logger = get_logger("yield_ledger.delegation")


class DelegationRegistry:
    """
    Tracks intermediaries, each intermediary's current beneficiary, and how
    many tokens intermediaries hold on behalf of each beneficiary.

    Invariants: held counters never go negative; an intermediary's
    beneficiary mapping is cleared only when that beneficiary's counter
    returns to zero.
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.intermediaries_table = "intermediaries"
        self.beneficiaries_table = "intermediary_beneficiaries"
        self.held_table = "held_by_intermediary"

    # Lookups

    def is_intermediary(self, account: str) -> bool:
        return self.storage.exists(self.intermediaries_table, account)

    def beneficiary_of(self, intermediary: str) -> Optional[str]:
        data = self.storage.load(self.beneficiaries_table, intermediary)
        return data['beneficiary'] if data else None

    def held_by_intermediary(self, beneficiary: str) -> int:
        data = self.storage.load(self.held_table, beneficiary)
        return int(data['amount']) if data else 0

    def redirect_target(self, holder: str) -> Optional[str]:
        """Beneficiary that should receive `holder`'s yield, if redirected"""
        if not self.is_intermediary(holder):
            return None
        return self.beneficiary_of(holder)

    # Administrative registration

    def register_intermediary(self, account: str, caller: Optional[str] = None) -> None:
        if is_zero_address(account):
            raise PreconditionError("Intermediary must not be the zero address")
        if self.is_intermediary(account):
            raise PreconditionError(f"{account} is already registered as an intermediary")

        self.storage.save(self.intermediaries_table, account, {'account': account})
        self.audit_trail.log_event(
            event_type=AuditEventType.INTERMEDIARY_REGISTERED,
            entity_type="intermediary",
            entity_id=account,
            user_id=caller
        )
        log_action(logger, "info", f"Intermediary {account} registered",
                   user_id=caller, action="register_intermediary", resource=f"intermediary:{account}")

    def unregister_intermediary(self, account: str, caller: Optional[str] = None) -> None:
        if is_zero_address(account):
            raise PreconditionError("Intermediary must not be the zero address")
        if not self.is_intermediary(account):
            raise PreconditionError(f"{account} is not registered as an intermediary")

        self.storage.delete(self.intermediaries_table, account)
        self.audit_trail.log_event(
            event_type=AuditEventType.INTERMEDIARY_UNREGISTERED,
            entity_type="intermediary",
            entity_id=account,
            user_id=caller,
            metadata={"beneficiary": self.beneficiary_of(account)}
        )
        log_action(logger, "info", f"Intermediary {account} unregistered",
                   user_id=caller, action="unregister_intermediary", resource=f"intermediary:{account}")

    # Counter bookkeeping

    def attribute(self, intermediary: str, beneficiary: str, amount: int) -> int:
        """Point the intermediary at beneficiary and add amount to its held counter"""
        if is_zero_address(beneficiary):
            raise PreconditionError("Beneficiary must not be the zero address")
        if amount < 0:
            raise PreconditionError(f"Amount must not be negative: {amount}")

        held = self.held_by_intermediary(beneficiary) + amount
        self.storage.save(self.beneficiaries_table, intermediary,
                          {'intermediary': intermediary, 'beneficiary': beneficiary})
        self.storage.save(self.held_table, beneficiary,
                          {'beneficiary': beneficiary, 'amount': str(held)})
        return held

    def detach(self, intermediary: str, beneficiary: str, amount: int) -> int:
        """Remove amount from beneficiary's held counter; clear the mapping at zero"""
        if amount < 0:
            raise PreconditionError(f"Amount must not be negative: {amount}")

        current = self.held_by_intermediary(beneficiary)
        if amount > current:
            raise AccountingUnderflowError(
                f"Cannot release {amount} held for {beneficiary}: only {current} tracked"
            )

        held = current - amount
        self.storage.save(self.held_table, beneficiary,
                          {'beneficiary': beneficiary, 'amount': str(held)})
        if held == 0 and self.beneficiary_of(intermediary) == beneficiary:
            self.storage.delete(self.beneficiaries_table, intermediary)
        return held

    # Intermediary-only operations

    def _require_intermediary(self, caller: str) -> None:
        if not self.is_intermediary(caller):
            raise UnauthorizedError(f"{caller} is not a registered intermediary")

    def register_pending_order(self, intermediary: str, beneficiary: str, amount: int) -> int:
        """
        Called by an intermediary when it starts holding tokens for beneficiary.

        Returns:
            The beneficiary's updated held counter
        """
        self._require_intermediary(intermediary)
        held = self.attribute(intermediary, beneficiary, amount)

        self.audit_trail.log_event(
            event_type=AuditEventType.PENDING_ORDER_REGISTERED,
            entity_type="intermediary",
            entity_id=intermediary,
            user_id=intermediary,
            metadata={"beneficiary": beneficiary, "amount": str(amount), "held": str(held)}
        )
        log_action(logger, "info", f"Pending order of {amount} registered for {beneficiary}",
                   user_id=intermediary, action="register_pending_order",
                   resource=f"beneficiary:{beneficiary}", extra={"held": str(held)})
        return held

    def release_pending_order(self, intermediary: str, beneficiary: str, amount: int) -> int:
        """
        Called by an intermediary when it stops holding tokens for beneficiary.

        Raises:
            AccountingUnderflowError: amount exceeds the tracked counter
        """
        self._require_intermediary(intermediary)
        held = self.detach(intermediary, beneficiary, amount)

        self.audit_trail.log_event(
            event_type=AuditEventType.PENDING_ORDER_RELEASED,
            entity_type="intermediary",
            entity_id=intermediary,
            user_id=intermediary,
            metadata={"beneficiary": beneficiary, "amount": str(amount), "held": str(held)}
        )
        log_action(logger, "info", f"Pending order of {amount} released for {beneficiary}",
                   user_id=intermediary, action="release_pending_order",
                   resource=f"beneficiary:{beneficiary}", extra={"held": str(held)})
        return held

    # Transfer hooks

    def on_received(self, intermediary: str, sender: str, amount: int) -> None:
        """Tokens arrived at an intermediary from sender, who becomes the beneficiary"""
        if is_zero_address(sender):
            return
        self.attribute(intermediary, sender, amount)

    def on_sent(self, intermediary: str, amount: int) -> None:
        """Tokens left an intermediary; reduce its current beneficiary's counter"""
        beneficiary = self.beneficiary_of(intermediary)
        if beneficiary is None:
            return
        self.detach(intermediary, beneficiary, amount)
