"""
Holder State Store

Per-holder running totals derived from balance history. Holder state is
created lazily on first use and never deleted.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List

from .audit import AuditTrail, AuditEventType
from .errors import PreconditionError
from .storage import StorageInterface, StorageRecord


_INT_FIELDS = (
    'balance', 'balance_seconds', 'yield_accrued', 'yield_withdrawn',
    'last_balance_timestamp', 'last_settled_balance_seconds'
)


@dataclass
class HolderState(StorageRecord):
    """
    Time-weighted balance accounting for one holder.

    balance_seconds, yield_accrued and yield_withdrawn only ever grow, and
    yield_withdrawn never exceeds yield_accrued.
    """
    holder: str
    balance: int = 0
    balance_seconds: int = 0
    yield_accrued: int = 0
    yield_withdrawn: int = 0
    last_balance_timestamp: int = 0
    last_settled_balance_seconds: int = 0  # balance_seconds at the last processed deposit

    def __post_init__(self):
        for name in _INT_FIELDS:
            if getattr(self, name) < 0:
                raise PreconditionError(f"{name} must not be negative for {self.holder}")
        if self.yield_withdrawn > self.yield_accrued:
            raise PreconditionError(
                f"Withdrawn yield exceeds accrued yield for {self.holder}: "
                f"{self.yield_withdrawn} > {self.yield_accrued}"
            )

    @property
    def yield_owed(self) -> int:
        """Accrued yield not yet withdrawn"""
        return self.yield_accrued - self.yield_withdrawn

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        for name in _INT_FIELDS:
            result[name] = str(getattr(self, name))
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HolderState':
        data = cls._parse_timestamps(dict(data))
        for name in _INT_FIELDS:
            data[name] = int(data[name])
        return cls(**data)


class HolderStateStore:
    """Loads, creates and persists HolderState entries"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "holder_states"

    def exists(self, holder: str) -> bool:
        return self.storage.exists(self.table_name, holder)

    def get(self, holder: str) -> HolderState:
        """Load a holder's state, or a fresh unsaved one if none exists"""
        data = self.storage.load(self.table_name, holder)
        if data:
            return HolderState.from_dict(data)
        now = datetime.now(timezone.utc)
        return HolderState(id=holder, created_at=now, updated_at=now, holder=holder)

    def save(self, state: HolderState) -> None:
        state.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, state.holder, state.to_dict())

    def list_holders(self) -> List[HolderState]:
        return [HolderState.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def touch_balance(self, holder: str, new_balance: int, now: int) -> HolderState:
        """
        Record a balance change at `now`.

        The old balance is credited for the seconds it was held; the new
        balance starts earning from `now`. Settle the holder first, or the
        pre-change balance would miss its share of earlier deposits.
        """
        if new_balance < 0:
            raise PreconditionError(f"Balance must not be negative for {holder}: {new_balance}")

        state = self.get(holder)
        if now < state.last_balance_timestamp:
            raise PreconditionError(
                f"Balance update at {now} precedes last update at {state.last_balance_timestamp} "
                f"for {holder}"
            )

        old_balance = state.balance
        state.balance_seconds += old_balance * (now - state.last_balance_timestamp)
        state.balance = new_balance
        state.last_balance_timestamp = now
        self.save(state)

        self.audit_trail.log_event(
            event_type=AuditEventType.BALANCE_CHANGED,
            entity_type="holder",
            entity_id=holder,
            metadata={
                "old_balance": str(old_balance),
                "new_balance": str(new_balance),
                "balance_seconds": str(state.balance_seconds),
                "timestamp": now
            }
        )
        return state
