"""
Deposit History Ledger

Append-only, timestamp-indexed chain of yield deposits, newest first.
Records are addressed by their timestamp and linked through
previous_timestamp; deposits landing in the same instant coalesce into a
single record. The global balance-seconds accumulator lives here too,
since every record snapshots it.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

from .audit import AuditTrail, AuditEventType
from .errors import PreconditionError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("yield_ledger.deposits")


@dataclass
class GlobalSupplyState:
    """Sum of balance x seconds over every holder, and when it was last advanced"""
    total_balance_seconds: int = 0
    last_supply_timestamp: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_balance_seconds': str(self.total_balance_seconds),
            'last_supply_timestamp': self.last_supply_timestamp
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GlobalSupplyState':
        return cls(
            total_balance_seconds=int(data['total_balance_seconds']),
            last_supply_timestamp=int(data['last_supply_timestamp'])
        )


@dataclass
class DepositRecord(StorageRecord):
    """
    One coalesced yield injection. Immutable once a later record exists;
    the newest record may still absorb same-instant deposits.
    """
    timestamp: int
    amount: int
    total_balance_seconds_snapshot: int
    previous_timestamp: int

    def __post_init__(self):
        if self.amount < 0:
            raise PreconditionError("Deposit amount must not be negative")
        if self.timestamp and self.previous_timestamp >= self.timestamp:
            raise PreconditionError(
                f"Deposit chain must be strictly decreasing: "
                f"{self.previous_timestamp} >= {self.timestamp}"
            )

    @classmethod
    def empty(cls, timestamp: int = 0) -> 'DepositRecord':
        """Placeholder for timestamps with no deposit (including the chain terminator)"""
        epoch = datetime.fromtimestamp(0, timezone.utc)
        return cls(
            id=str(timestamp),
            created_at=epoch,
            updated_at=epoch,
            timestamp=timestamp,
            amount=0,
            total_balance_seconds_snapshot=0,
            previous_timestamp=0
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['amount'] = str(self.amount)
        result['total_balance_seconds_snapshot'] = str(self.total_balance_seconds_snapshot)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DepositRecord':
        data = cls._parse_timestamps(dict(data))
        data['timestamp'] = int(data['timestamp'])
        data['amount'] = int(data['amount'])
        data['total_balance_seconds_snapshot'] = int(data['total_balance_seconds_snapshot'])
        data['previous_timestamp'] = int(data['previous_timestamp'])
        return cls(**data)


class DepositHistory:
    """
    Deposit chain plus the global supply clock.

    All state is read from and written to storage on every call, so the
    history participates in whatever transaction the caller has open.
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.records_table = "deposit_records"
        self.meta_table = "deposit_history"
        self.supply_table = "supply_state"

    @property
    def last_timestamp(self) -> int:
        """Timestamp of the newest deposit record, 0 when there is none"""
        data = self.storage.load(self.meta_table, "head")
        return int(data['last_timestamp']) if data else 0

    def get_record(self, timestamp: int) -> Optional[DepositRecord]:
        """Get the deposit record at a timestamp, if any"""
        data = self.storage.load(self.records_table, str(timestamp))
        if data:
            return DepositRecord.from_dict(data)
        return None

    def record_at(self, timestamp: int) -> DepositRecord:
        """Like get_record, but an empty record stands in for missing timestamps"""
        return self.get_record(timestamp) or DepositRecord.empty(timestamp)

    def iter_records(self) -> Iterator[DepositRecord]:
        """Walk the chain from the newest record back to the first"""
        timestamp = self.last_timestamp
        while timestamp:
            record = self.get_record(timestamp)
            if record is None:
                break
            yield record
            timestamp = record.previous_timestamp

    def get_supply_state(self) -> GlobalSupplyState:
        data = self.storage.load(self.supply_table, "global")
        if data:
            return GlobalSupplyState.from_dict(data)
        return GlobalSupplyState()

    def advance_supply_clock(self, total_supply: int, now: int) -> GlobalSupplyState:
        """
        Accrue total_supply x elapsed seconds into the global accumulator.

        total_supply must be the supply that was in force since the last
        advance, i.e. read before any pending balance change commits.
        """
        state = self.get_supply_state()
        if now < state.last_supply_timestamp:
            raise PreconditionError(
                f"Supply clock cannot move backwards: {now} < {state.last_supply_timestamp}"
            )
        if total_supply < 0:
            raise PreconditionError(f"Total supply must not be negative: {total_supply}")

        state.total_balance_seconds += total_supply * (now - state.last_supply_timestamp)
        state.last_supply_timestamp = now
        self.storage.save(self.supply_table, "global", state.to_dict())
        return state

    def record_deposit(
        self,
        amount: int,
        total_supply: int,
        now: int,
        depositor: Optional[str] = None
    ) -> Optional[DepositRecord]:
        """
        Append a deposit at `now`, or fold it into the record already there.

        Args:
            amount: Yield units deposited; already moved into custody
            total_supply: Token supply in force since the last clock advance
            now: Current ledger instant
            depositor: Account that made the deposit, for the audit trail

        Returns:
            The new or amended DepositRecord, or None for a zero amount
        """
        if amount < 0:
            raise PreconditionError(f"Deposit amount must not be negative: {amount}")
        if amount == 0:
            return None

        supply = self.advance_supply_clock(total_supply, now)
        last_timestamp = self.last_timestamp
        existing = self.get_record(now)
        at = datetime.now(timezone.utc)

        if existing is not None:
            existing.amount += amount
            existing.total_balance_seconds_snapshot = supply.total_balance_seconds
            existing.updated_at = at
            record = existing
            coalesced = True
        else:
            if now <= last_timestamp:
                raise PreconditionError(
                    f"Deposit at {now} would not be newer than the last deposit at {last_timestamp}"
                )
            record = DepositRecord(
                id=str(now),
                created_at=at,
                updated_at=at,
                timestamp=now,
                amount=amount,
                total_balance_seconds_snapshot=supply.total_balance_seconds,
                previous_timestamp=last_timestamp
            )
            self.storage.save(self.meta_table, "head", {'last_timestamp': now})
            coalesced = False

        self.storage.save(self.records_table, record.id, record.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.DEPOSIT_RECORDED,
            entity_type="deposit",
            entity_id=record.id,
            user_id=depositor,
            metadata={
                "amount": str(amount),
                "record_amount": str(record.amount),
                "total_balance_seconds_snapshot": str(record.total_balance_seconds_snapshot),
                "previous_timestamp": record.previous_timestamp,
                "coalesced": coalesced
            }
        )
        log_action(
            logger, "info",
            f"Deposit of {amount} recorded at {now}" + (" (coalesced)" if coalesced else ""),
            user_id=depositor, action="record_deposit", resource=f"deposit:{now}",
            extra={"amount": str(amount), "record_amount": str(record.amount)}
        )
        return record
