"""
Yield-Bearing Token Service

Top-level facade owning the ledger context: storage, deposit history, holder
state, delegation registry, accrual engine and the external collaborators.
Every public operation is all-or-nothing: it runs inside one storage
transaction and publishes its domain events only after that commits.
"""

from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from .accrual import AccrualEngine, Settlement
from .audit import AuditTrail
from .clock import Clock, SystemClock
from .collaborators import (
    ZERO_ADDRESS, AccessControl, AllowListAccessControl, StorageCustody,
    StorageTokenLedger, TokenLedger, ValueTransfer, is_zero_address
)
from .config import YieldLedgerConfig, get_config
from .delegation import DelegationRegistry
from .deposits import DepositHistory, DepositRecord, GlobalSupplyState
from .errors import PreconditionError, TransferFailedError, UnauthorizedError
from .events import DomainEvent, EventDispatcher, EventPayload
from .holders import HolderState, HolderStateStore
from .logging_config import get_logger, log_action
from .storage import StorageInterface, create_storage


logger = get_logger("yield_ledger.token")


class YieldBearingToken:
    """
    A token whose holders accrue deposited yield in proportion to their
    balance-seconds.
    """

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        token_ledger: Optional[TokenLedger] = None,
        value_transfer: Optional[ValueTransfer] = None,
        access_control: Optional[AccessControl] = None,
        clock: Optional[Clock] = None,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[YieldLedgerConfig] = None
    ):
        config = config or get_config()
        self.config = config
        self.storage = storage or create_storage(config.database_url)
        self.clock = clock or SystemClock()
        self.audit_trail = AuditTrail(self.storage, enabled=config.enable_audit_logging)
        self.events = dispatcher or EventDispatcher()

        self.token_ledger = token_ledger or StorageTokenLedger(self.storage)
        self.value_transfer = value_transfer or StorageCustody(self.storage)
        self.access_control = access_control or AllowListAccessControl(config.admin_accounts)

        self.history = DepositHistory(self.storage, self.audit_trail)
        self.holders = HolderStateStore(self.storage, self.audit_trail)
        self.registry = DelegationRegistry(self.storage, self.audit_trail)
        self.engine = AccrualEngine(
            self.storage, self.history, self.holders, self.registry,
            self.audit_trail, scale_factor=config.scale_factor
        )

        self.token_ledger.set_balance_hook(self.on_balance_change)

        self._pending_events: List[EventPayload] = []
        self._in_operation = False

    # Operation plumbing

    @contextmanager
    def _operation(self):
        """Run one public operation atomically; flush its events on success"""
        outermost = not self._in_operation
        self._in_operation = True
        try:
            with self.storage.atomic():
                yield
        except BaseException:
            if outermost:
                self._pending_events.clear()
            raise
        finally:
            if outermost:
                self._in_operation = False
        if outermost:
            self._flush_events()

    def _emit(self, event_type: DomainEvent, entity_type: str, entity_id: str,
              data: Dict[str, Any]) -> None:
        if self.config.enable_events:
            self._pending_events.append(EventPayload(
                event_type=event_type, entity_type=entity_type,
                entity_id=entity_id, data=data
            ))

    def _flush_events(self) -> None:
        events, self._pending_events = self._pending_events, []
        for event in events:
            self.events.publish(event)

    def _authorize(self, caller: str, action: str) -> None:
        if not self.access_control.is_authorized(caller):
            log_action(logger, "warning", f"Unauthorized {action} attempt by {caller}",
                       user_id=caller, action=action)
            raise UnauthorizedError(f"{caller} is not authorized to {action}")

    # Yield deposits and settlement

    def record_deposit(self, caller: str, amount: int) -> Optional[DepositRecord]:
        """
        Move `amount` of the yield asset from caller into custody and append
        it to the deposit history.

        Returns:
            The new or coalesced DepositRecord; None for a zero amount
        """
        self._authorize(caller, "record_deposit")
        if amount < 0:
            raise PreconditionError(f"Deposit amount must not be negative: {amount}")
        if amount == 0:
            return None

        with self._operation():
            now = self.clock.now()
            if not self.value_transfer.move_in(caller, amount):
                raise TransferFailedError("in", caller, amount)
            record = self.history.record_deposit(
                amount, self.token_ledger.total_supply(), now, depositor=caller
            )
            self._emit(DomainEvent.YIELD_DEPOSITED, "deposit", record.id, {
                "amount": str(amount),
                "record_amount": str(record.amount),
                "timestamp": record.timestamp
            })
        return record

    def settle(self, holder: str) -> Settlement:
        """Settle a holder's yield (permissionless)"""
        with self._operation():
            settlement = self.engine.settle(holder, self.clock.now())
            self._emit_settlement(settlement)
        return settlement

    def claim(self, holder: str) -> int:
        """Settle and pay out a holder's unwithdrawn yield (permissionless)"""
        with self._operation():
            paid, settlement = self.engine.claim(holder, self.clock.now(), self.value_transfer)
            self._emit_settlement(settlement)
            if paid:
                self._emit(DomainEvent.YIELD_CLAIMED, "holder", holder, {"amount": str(paid)})
        return paid

    def _emit_settlement(self, settlement: Settlement) -> None:
        if settlement.accrued:
            self._emit(DomainEvent.YIELD_SETTLED, "holder", settlement.holder, {
                "accrued": str(settlement.accrued),
                "credited_to": settlement.credited_to,
                "deposits_processed": settlement.deposits_processed
            })

    # Balance-change hook

    def on_balance_change(self, sender: str, recipient: str, amount: int,
                          now: Optional[int] = None) -> None:
        """
        Keep holder state current before the token ledger commits a transfer.

        Both sides are settled on their pre-change balance before the new
        balance is recorded. Mints come from, and burns go to, ZERO_ADDRESS.
        """
        if now is None:
            now = self.clock.now()

        with self._operation():
            self.history.advance_supply_clock(self.token_ledger.total_supply(), now)

            if sender == recipient:
                if not is_zero_address(sender):
                    self._settle_and_touch(sender, self.token_ledger.balance_of(sender), now)
                return

            if not is_zero_address(sender):
                self._settle_and_touch(sender, self.token_ledger.balance_of(sender) - amount, now)
            if not is_zero_address(recipient):
                self._settle_and_touch(recipient, self.token_ledger.balance_of(recipient) + amount, now)

            if not is_zero_address(recipient) and self.registry.is_intermediary(recipient):
                self.registry.on_received(recipient, sender, amount)
            if not is_zero_address(sender) and self.registry.is_intermediary(sender):
                self.registry.on_sent(sender, amount)

    def _settle_and_touch(self, holder: str, new_balance: int, now: int) -> None:
        settlement = self.engine.settle_before_balance_change(holder, now)
        self._emit_settlement(settlement)
        state = self.holders.touch_balance(holder, new_balance, now)
        self._emit(DomainEvent.BALANCE_CHANGED, "holder", holder, {
            "balance": str(state.balance),
            "timestamp": now
        })

    # Token movements routed through the token ledger

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        if is_zero_address(sender) or is_zero_address(recipient):
            raise PreconditionError("Transfers require non-zero sender and recipient")
        with self._operation():
            self.token_ledger.update(sender, recipient, amount)

    def mint(self, caller: str, recipient: str, amount: int) -> None:
        self._authorize(caller, "mint")
        if is_zero_address(recipient):
            raise PreconditionError("Cannot mint to the zero address")
        with self._operation():
            self.token_ledger.update(ZERO_ADDRESS, recipient, amount)

    def burn(self, caller: str, holder: str, amount: int) -> None:
        """Burn a holder's tokens; holders may burn their own, admins anyone's"""
        if caller != holder:
            self._authorize(caller, "burn")
        if is_zero_address(holder):
            raise PreconditionError("Cannot burn from the zero address")
        with self._operation():
            self.token_ledger.update(holder, ZERO_ADDRESS, amount)

    def fund_custody(self, caller: str, account: str, amount: int) -> int:
        """
        Credit external yield-asset funds to an account so it can deposit.

        Only available with the built-in custody; an injected value transfer
        collaborator manages its own funds.

        Returns:
            The account's funds after the credit
        """
        self._authorize(caller, "fund_custody")
        if not isinstance(self.value_transfer, StorageCustody):
            raise PreconditionError("Funding requires the built-in custody")
        if is_zero_address(account):
            raise PreconditionError("Cannot fund the zero address")
        with self._operation():
            self.value_transfer.fund(account, amount)
            log_action(logger, "info", f"Funded {account} with {amount}",
                       user_id=caller, action="fund_custody", resource=f"custody:{account}")
        return self.value_transfer.funds_of(account)

    # Intermediary bookkeeping

    def register_intermediary(self, caller: str, account: str) -> None:
        self._authorize(caller, "register_intermediary")
        with self._operation():
            self.registry.register_intermediary(account, caller=caller)
            self._emit(DomainEvent.INTERMEDIARY_REGISTERED, "intermediary", account, {})

    def unregister_intermediary(self, caller: str, account: str) -> None:
        self._authorize(caller, "unregister_intermediary")
        with self._operation():
            self.registry.unregister_intermediary(account, caller=caller)
            self._emit(DomainEvent.INTERMEDIARY_UNREGISTERED, "intermediary", account, {})

    def register_pending_order(self, caller: str, beneficiary: str, amount: int) -> int:
        with self._operation():
            held = self.registry.register_pending_order(caller, beneficiary, amount)
            self._emit(DomainEvent.PENDING_ORDER_REGISTERED, "intermediary", caller, {
                "beneficiary": beneficiary, "amount": str(amount), "held": str(held)
            })
        return held

    def release_pending_order(self, caller: str, beneficiary: str, amount: int) -> int:
        with self._operation():
            held = self.registry.release_pending_order(caller, beneficiary, amount)
            self._emit(DomainEvent.PENDING_ORDER_RELEASED, "intermediary", caller, {
                "beneficiary": beneficiary, "amount": str(amount), "held": str(held)
            })
        return held

    # Read-only accessors

    def balance_of(self, holder: str) -> int:
        return self.token_ledger.balance_of(holder)

    def total_supply(self) -> int:
        return self.token_ledger.total_supply()

    def holder_state(self, holder: str) -> HolderState:
        return self.holders.get(holder)

    def yield_accrued(self, holder: str) -> int:
        return self.holders.get(holder).yield_accrued

    def yield_withdrawn(self, holder: str) -> int:
        return self.holders.get(holder).yield_withdrawn

    def pending_yield(self, holder: str) -> int:
        return self.engine.pending_yield(holder, self.clock.now())

    def held_by_intermediary(self, beneficiary: str) -> int:
        return self.registry.held_by_intermediary(beneficiary)

    def beneficiary_of(self, intermediary: str) -> Optional[str]:
        return self.registry.beneficiary_of(intermediary)

    def is_intermediary(self, account: str) -> bool:
        return self.registry.is_intermediary(account)

    def deposit_record(self, timestamp: int) -> Optional[DepositRecord]:
        return self.history.get_record(timestamp)

    def deposit_history(self, limit: Optional[int] = None) -> List[DepositRecord]:
        """Deposit records newest first"""
        records = []
        for record in self.history.iter_records():
            if limit is not None and len(records) >= limit:
                break
            records.append(record)
        return records

    def supply_state(self) -> GlobalSupplyState:
        return self.history.get_supply_state()
