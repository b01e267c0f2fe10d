"""
Accrual Engine

Converts the deposit history plus a holder's balance history into the exact
yield the holder is owed.

Settlement walks the deposit chain backwards from the newest deposit to the
holder's last balance update. Every interval between two consecutive
deposits is split pro rata: the holder's balance-seconds inside the interval
over the balance-seconds of all holders inside it. Because the holder's
balance is constant since its last update, intervals that start after that
update use balance x interval length directly; the single interval straddling
the update uses the holder's recorded balance-seconds instead.

Divisions are done on values pre-multiplied by a large scale factor and only
divided down once, at commit time.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from .audit import AuditTrail, AuditEventType
from .collaborators import ValueTransfer
from .delegation import DelegationRegistry
from .deposits import DepositHistory
from .errors import TransferFailedError
from .holders import HolderState, HolderStateStore
from .logging_config import get_logger, log_action
from .storage import StorageInterface


logger = get_logger("yield_ledger.accrual")

SCALE_FACTOR = 10 ** 18

SKIP_SAME_INSTANT = "same_instant_deposit"
SKIP_NEVER_HELD = "never_held"
SKIP_ALREADY_SETTLED = "already_settled"


@dataclass
class Settlement:
    """Outcome of one settle() call"""
    holder: str
    accrued: int = 0                   # Yield credited by this call
    credited_to: Optional[str] = None  # Beneficiary when redirected, else the holder
    deposits_processed: int = 0
    skipped: Optional[str] = None      # Reason when nothing was done

    @property
    def redirected(self) -> bool:
        return self.credited_to is not None and self.credited_to != self.holder


@dataclass
class _Walk:
    cursor: int
    current_balance_seconds: int
    accumulator: int
    deposits_processed: int


class AccrualEngine:
    """
    Settles and pays out holder yield.

    The engine keeps no state of its own; everything lives in the deposit
    history, holder store and delegation registry, which all write through
    the shared storage backend.
    """

    def __init__(
        self,
        storage: StorageInterface,
        history: DepositHistory,
        holders: HolderStateStore,
        registry: DelegationRegistry,
        audit_trail: AuditTrail,
        scale_factor: int = SCALE_FACTOR
    ):
        if scale_factor <= 0:
            raise ValueError("Scale factor must be positive")
        self.storage = storage
        self.history = history
        self.holders = holders
        self.registry = registry
        self.audit_trail = audit_trail
        self.scale_factor = scale_factor

    def _skip_reason(self, state: HolderState, cursor: int, now: int) -> Optional[str]:
        baseline = state.last_balance_timestamp
        # A deposit from this very instant may still be followed by another
        # one in the same instant; defer everything to a later instant.
        if cursor == now:
            return SKIP_SAME_INSTANT
        if baseline == 0:
            return SKIP_NEVER_HELD
        if cursor < baseline:
            return SKIP_ALREADY_SETTLED
        return None

    def _walk(self, state: HolderState, cursor: int) -> _Walk:
        """Accumulate the scaled yield for every deposit the holder has not been settled for"""
        baseline = state.last_balance_timestamp
        balance = state.balance

        # A deposit on the baseline instant is still owed while balance-seconds
        # have grown past the last settled point.
        floor = baseline
        if state.last_settled_balance_seconds < state.balance_seconds:
            floor = baseline - 1

        current = state.balance_seconds + balance * (cursor - baseline)
        remaining = current
        accumulator = 0
        processed = 0

        record = self.history.record_at(cursor)
        while record.amount and record.timestamp > floor:
            prev = record.previous_timestamp
            prev_record = self.history.record_at(prev)
            interval_total = record.total_balance_seconds_snapshot - prev_record.total_balance_seconds_snapshot
            processed += 1

            if prev > floor:
                contribution = balance * (record.timestamp - prev)
                remaining -= contribution
                if interval_total:
                    accumulator += record.amount * self.scale_factor * contribution // interval_total
            else:
                if interval_total:
                    share = remaining - state.last_settled_balance_seconds
                    accumulator += record.amount * self.scale_factor * share // interval_total
                break

            record = prev_record

        return _Walk(cursor=cursor, current_balance_seconds=current,
                     accumulator=accumulator, deposits_processed=processed)

    def settle(self, holder: str, now: int) -> Settlement:
        """
        Commit all yield `holder` is owed up to the newest processable deposit.

        Idempotent: with no new deposits a second call changes nothing. When
        the holder is a registered intermediary with a beneficiary, the
        accrual is credited to the beneficiary instead.
        """
        return self._settle(holder, now, self.history.last_timestamp)

    def settle_before_balance_change(self, holder: str, now: int) -> Settlement:
        """
        Settle ahead of a balance change at `now`.

        A deposit from this instant stays deferred, but everything before it
        is settled, so the deferred deposit is the only unprocessed record
        left on the holder's new baseline.
        """
        cursor = self.history.last_timestamp
        if cursor == now:
            cursor = self.history.record_at(cursor).previous_timestamp
        return self._settle(holder, now, cursor)

    def _settle(self, holder: str, now: int, cursor: int) -> Settlement:
        with self.storage.atomic():
            state = self.holders.get(holder)
            skipped = self._skip_reason(state, cursor, now)
            if skipped:
                logger.debug("Settlement of %s skipped: %s", holder, skipped)
                return Settlement(holder=holder, skipped=skipped)

            walk = self._walk(state, cursor)
            accrued = walk.accumulator // self.scale_factor

            state.last_settled_balance_seconds = walk.current_balance_seconds
            state.balance_seconds = walk.current_balance_seconds
            state.last_balance_timestamp = walk.cursor

            target = self.registry.redirect_target(holder) or holder
            if target == holder:
                state.yield_accrued += accrued
                self.holders.save(state)
            else:
                self.holders.save(state)
                if accrued:
                    beneficiary = self.holders.get(target)
                    beneficiary.yield_accrued += accrued
                    self.holders.save(beneficiary)

            settlement = Settlement(holder=holder, accrued=accrued, credited_to=target,
                                    deposits_processed=walk.deposits_processed)
            if walk.deposits_processed:
                self._record_settlement(settlement, walk.cursor)
            return settlement

    def _record_settlement(self, settlement: Settlement, cursor: int) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.YIELD_SETTLED,
            entity_type="holder",
            entity_id=settlement.holder,
            metadata={
                "accrued": str(settlement.accrued),
                "credited_to": settlement.credited_to,
                "deposits_processed": settlement.deposits_processed,
                "settled_through": cursor
            }
        )
        if settlement.accrued:
            log_action(
                logger, "info",
                f"Settled {settlement.accrued} for {settlement.holder}"
                + (f" (redirected to {settlement.credited_to})" if settlement.redirected else ""),
                action="settle", resource=f"holder:{settlement.holder}",
                extra={"deposits_processed": settlement.deposits_processed, "through": cursor}
            )

    def pending_yield(self, holder: str, now: int) -> int:
        """What claim(holder) would pay at `now`, without committing anything"""
        state = self.holders.get(holder)
        owed = state.yield_owed
        cursor = self.history.last_timestamp
        if self._skip_reason(state, cursor, now) is None and not self.registry.redirect_target(holder):
            owed += self._walk(state, cursor).accumulator // self.scale_factor
        return owed

    def claim(self, holder: str, now: int, value_transfer: ValueTransfer) -> Tuple[int, Settlement]:
        """
        Settle `holder` and pay out everything accrued but not yet withdrawn.

        Returns:
            (amount paid, settlement); amount 0 means nothing was moved

        Raises:
            TransferFailedError: the payout failed; no state change survives
        """
        with self.storage.atomic():
            settlement = self.settle(holder, now)
            state = self.holders.get(holder)
            owed = state.yield_owed
            if owed == 0:
                return 0, settlement

            state.yield_withdrawn = state.yield_accrued
            self.holders.save(state)

            if not value_transfer.move_out(holder, owed):
                raise TransferFailedError("out", holder, owed)

            self.audit_trail.log_event(
                event_type=AuditEventType.YIELD_CLAIMED,
                entity_type="holder",
                entity_id=holder,
                user_id=holder,
                metadata={
                    "amount": str(owed),
                    "yield_accrued": str(state.yield_accrued),
                    "yield_withdrawn": str(state.yield_withdrawn)
                }
            )
            log_action(logger, "info", f"Claimed {owed} for {holder}",
                       user_id=holder, action="claim", resource=f"holder:{holder}",
                       extra={"amount": str(owed)})
            return owed, settlement
