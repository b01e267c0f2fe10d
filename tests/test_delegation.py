"""
Test suite for intermediary delegation

Tests the registry bookkeeping and the redirection of intermediary yield
to beneficiaries.
"""

import pytest

from yield_ledger.audit import AuditTrail, AuditEventType
from yield_ledger.clock import ManualClock
from yield_ledger.collaborators import ZERO_ADDRESS, AllowListAccessControl
from yield_ledger.config import YieldLedgerConfig
from yield_ledger.delegation import DelegationRegistry
from yield_ledger.errors import AccountingUnderflowError, PreconditionError, UnauthorizedError
from yield_ledger.storage import InMemoryStorage
from yield_ledger.token import YieldBearingToken


ADMIN = "0xadmin"
ALICE = "0xalice"
BOB = "0xbob"
CAROL = "0xcarol"
DEX = "0xdex"


class TestDelegationRegistry:
    """Test registry operations in isolation"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.registry = DelegationRegistry(self.storage, self.audit_trail)

    def test_register_and_unregister(self):
        """Intermediaries can be registered and removed"""
        self.registry.register_intermediary(DEX, caller=ADMIN)
        assert self.registry.is_intermediary(DEX)

        self.registry.unregister_intermediary(DEX, caller=ADMIN)
        assert not self.registry.is_intermediary(DEX)

        types = [e.event_type for e in self.audit_trail.get_all_events()]
        assert types == [AuditEventType.INTERMEDIARY_REGISTERED,
                         AuditEventType.INTERMEDIARY_UNREGISTERED]

    def test_duplicate_registration_rejected(self):
        """Registering twice is a precondition violation"""
        self.registry.register_intermediary(DEX)
        with pytest.raises(PreconditionError, match="already registered"):
            self.registry.register_intermediary(DEX)

    def test_unregister_absent_rejected(self):
        """Removing an unknown intermediary is a precondition violation"""
        with pytest.raises(PreconditionError, match="not registered"):
            self.registry.unregister_intermediary(DEX)

    def test_zero_address_rejected(self):
        """The zero address can never be an intermediary"""
        with pytest.raises(PreconditionError):
            self.registry.register_intermediary(ZERO_ADDRESS)
        with pytest.raises(PreconditionError):
            self.registry.register_intermediary("")

    def test_pending_order_lifecycle(self):
        """Orders raise and lower the beneficiary counter; zero clears the mapping"""
        self.registry.register_intermediary(DEX)

        assert self.registry.register_pending_order(DEX, ALICE, 70) == 70
        assert self.registry.beneficiary_of(DEX) == ALICE
        assert self.registry.held_by_intermediary(ALICE) == 70

        assert self.registry.release_pending_order(DEX, ALICE, 30) == 40
        assert self.registry.beneficiary_of(DEX) == ALICE

        assert self.registry.release_pending_order(DEX, ALICE, 40) == 0
        assert self.registry.beneficiary_of(DEX) is None
        assert self.registry.held_by_intermediary(ALICE) == 0

    def test_release_more_than_tracked(self):
        """Releasing beyond the counter is an accounting underflow"""
        self.registry.register_intermediary(DEX)
        self.registry.register_pending_order(DEX, ALICE, 10)

        with pytest.raises(AccountingUnderflowError):
            self.registry.release_pending_order(DEX, ALICE, 11)
        assert self.registry.held_by_intermediary(ALICE) == 10

    def test_orders_require_intermediary(self):
        """Only registered intermediaries may manage orders"""
        with pytest.raises(UnauthorizedError):
            self.registry.register_pending_order(BOB, ALICE, 10)
        with pytest.raises(UnauthorizedError):
            self.registry.release_pending_order(BOB, ALICE, 0)

    def test_redirect_target(self):
        """Only intermediaries with a beneficiary redirect"""
        assert self.registry.redirect_target(DEX) is None
        self.registry.register_intermediary(DEX)
        assert self.registry.redirect_target(DEX) is None
        self.registry.register_pending_order(DEX, ALICE, 1)
        assert self.registry.redirect_target(DEX) == ALICE


class TestYieldRedirection:
    """Test yield redirection through the token"""

    def setup_method(self):
        self.clock = ManualClock(10)
        self.token = YieldBearingToken(
            storage=InMemoryStorage(),
            access_control=AllowListAccessControl([ADMIN]),
            clock=self.clock,
            config=YieldLedgerConfig()
        )
        self.token.value_transfer.fund(ADMIN, 10 ** 30)
        self.token.register_intermediary(ADMIN, DEX)
        self.token.mint(ADMIN, ALICE, 100)
        self.clock.set(12)
        self.token.transfer(ALICE, DEX, 100)

    def test_transfer_to_intermediary_attributes_sender(self):
        """Tokens sent to an intermediary count as held for the sender"""
        assert self.token.beneficiary_of(DEX) == ALICE
        assert self.token.held_by_intermediary(ALICE) == 100

    def test_intermediary_yield_goes_to_beneficiary(self):
        """Settling the intermediary credits its beneficiary instead"""
        self.clock.set(20)
        self.token.record_deposit(ADMIN, 1000)
        self.clock.set(21)

        settlement = self.token.settle(DEX)

        # DEX held 100 for 8 of the 10 seconds
        assert settlement.accrued == 800
        assert settlement.credited_to == ALICE
        assert settlement.redirected
        assert self.token.yield_accrued(DEX) == 0
        assert self.token.yield_accrued(ALICE) == 800

        self.token.settle(ALICE)
        assert self.token.yield_accrued(ALICE) == 1000

    def test_transfers_out_reduce_counter(self):
        """Tokens leaving the intermediary reduce the beneficiary counter"""
        self.clock.set(15)
        self.token.transfer(DEX, BOB, 40)
        assert self.token.held_by_intermediary(ALICE) == 60
        assert self.token.beneficiary_of(DEX) == ALICE

        self.token.transfer(DEX, BOB, 60)
        assert self.token.held_by_intermediary(ALICE) == 0
        assert self.token.beneficiary_of(DEX) is None

    def test_underflow_aborts_transfer(self):
        """A transfer that would underflow the counter changes nothing"""
        self.token.release_pending_order(DEX, ALICE, 100)
        self.token.register_pending_order(DEX, CAROL, 5)
        self.clock.set(15)
        before_dex = self.token.holder_state(DEX).to_dict()
        before_supply = self.token.supply_state()

        with pytest.raises(AccountingUnderflowError):
            self.token.transfer(DEX, BOB, 10)

        assert self.token.balance_of(DEX) == 100
        assert self.token.balance_of(BOB) == 0
        assert self.token.held_by_intermediary(CAROL) == 5
        assert self.token.holder_state(DEX).to_dict() == before_dex
        assert self.token.supply_state() == before_supply
        assert not self.token.holders.exists(BOB)

    def test_unregistered_intermediary_keeps_own_yield(self):
        """After unregistering, the former intermediary earns for itself"""
        self.token.unregister_intermediary(ADMIN, DEX)
        self.clock.set(20)
        self.token.record_deposit(ADMIN, 1000)
        self.clock.set(21)

        self.token.settle(DEX)

        assert self.token.yield_accrued(DEX) == 800
        assert self.token.yield_accrued(ALICE) == 0

    def test_mint_to_intermediary_has_no_beneficiary(self):
        """Minted tokens are not attributed to anyone"""
        self.token.release_pending_order(DEX, ALICE, 100)
        self.token.mint(ADMIN, DEX, 50)
        assert self.token.beneficiary_of(DEX) is None
