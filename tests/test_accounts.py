"""
Test suite for account management

Tests account opening, numbering, deactivation and the atomic balance
primitives: overdraft floor, inactive accounts, paired mutations and bounded
lock waits.
"""

import pytest
import threading
from decimal import Decimal

from banking_ledger.accounts import AccountStore, AccountType
from banking_ledger.currency import Currency
from banking_ledger.errors import (
    AccountInactiveError, ContendedError, InsufficientFundsError, InternalError,
    NotFoundError, ValidationError
)
from banking_ledger.locking import AccountLocks
from banking_ledger.numbering import AccountNumberGenerator, is_valid_account_number
from banking_ledger.storage import InMemoryStorage


class BrokenStorage(InMemoryStorage):
    """Storage whose batch writes fail once armed"""

    def __init__(self):
        super().__init__()
        self.broken = False

    def save_batch(self, writes):
        if self.broken:
            raise OSError("disk full")
        super().save_batch(writes)


class TestAccountStore:
    """Test account lifecycle"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.store = AccountStore(self.storage, lock_timeout=0.1)

    def test_open_account(self):
        account = self.store.open_account("user-1", AccountType.CHECKING, "USD")

        assert account.owner_id == "user-1"
        assert account.account_type == AccountType.CHECKING
        assert account.currency == Currency.USD
        assert account.balance == Decimal("0.00")
        assert account.interest_rate == Decimal("0.5")
        assert account.is_active
        assert is_valid_account_number(account.account_number)

        stored = self.store.get_account(account.id)
        assert stored.account_number == account.account_number
        assert self.store.get_account_by_number(account.account_number).id == account.id

    def test_open_account_accepts_string_type(self):
        account = self.store.open_account("user-1", "savings", Currency.EUR, overdraft_limit="50")
        assert account.account_type == AccountType.SAVINGS
        assert account.overdraft_limit == Decimal("50.00")

    def test_open_account_validation(self):
        with pytest.raises(ValidationError):
            self.store.open_account("user-1", "crypto", "USD")
        with pytest.raises(ValidationError):
            self.store.open_account("user-1", "checking", "XYZ")
        with pytest.raises(ValidationError):
            self.store.open_account("user-1", "checking", "USD", overdraft_limit="-1")
        with pytest.raises(ValidationError):
            self.store.open_account("", "checking", "USD")

    def test_account_numbers_unique_under_collisions(self):
        """A stalled clock and fixed random source still give distinct numbers"""
        class Zero:
            def randrange(self, stop):
                return 0

        generator = AccountNumberGenerator(clock=lambda: 1, rng=Zero())
        store = AccountStore(self.storage, number_generator=generator)
        numbers = {store.open_account("user-1", "checking", "USD").account_number for _ in range(20)}
        assert len(numbers) == 20

    def test_list_accounts(self):
        first = self.store.open_account("user-1", "checking", "USD")
        second = self.store.open_account("user-1", "savings", "USD")
        self.store.open_account("user-2", "checking", "USD")

        assert [a.id for a in self.store.list_accounts("user-1")] == [first.id, second.id]

    def test_deactivate_is_idempotent(self):
        account = self.store.open_account("user-1", "checking", "USD")
        deactivated = self.store.deactivate_account(account.id)
        assert not deactivated.is_active
        assert deactivated.deactivated_at is not None

        again = self.store.deactivate_account(account.id)
        assert again.deactivated_at == deactivated.deactivated_at

    def test_missing_account(self):
        assert self.store.get_account("nope") is None
        with pytest.raises(NotFoundError):
            self.store.require_account("nope")


class TestBalancePrimitives:
    """Test debit, credit and apply_pair"""

    def setup_method(self):
        self.storage = BrokenStorage()
        self.store = AccountStore(self.storage, lock_timeout=0.05)
        self.account = self.store.open_account(
            "user-1", "checking", "USD", initial_balance="100.00"
        )

    def test_credit_and_debit(self):
        change = self.store.credit(self.account.id, "50.00")
        assert change.old_balance == Decimal("100.00")
        assert change.new_balance == Decimal("150.00")
        assert change.delta == Decimal("50.00")

        self.store.debit(self.account.id, Decimal("30.25"))
        assert self.store.get_account(self.account.id).balance == Decimal("119.75")

    def test_debit_to_exactly_zero(self):
        self.store.debit(self.account.id, "100.00")
        assert self.store.get_account(self.account.id).balance == Decimal("0.00")

    def test_overdraft_floor_is_inclusive(self):
        account = self.store.open_account("user-1", "checking", "USD", overdraft_limit="100.00")
        self.store.debit(account.id, "100.00")
        assert self.store.get_account(account.id).balance == Decimal("-100.00")

        with pytest.raises(InsufficientFundsError) as exc_info:
            self.store.debit(account.id, "0.01")
        assert exc_info.value.details["requested"] == "0.01"
        assert self.store.get_account(account.id).balance == Decimal("-100.00")

    def test_non_positive_amounts_rejected(self):
        with pytest.raises(ValidationError):
            self.store.debit(self.account.id, "0")
        with pytest.raises(ValidationError):
            self.store.credit(self.account.id, "-5")

    def test_inactive_account_rejects_mutation(self):
        self.store.deactivate_account(self.account.id)
        with pytest.raises(AccountInactiveError):
            self.store.credit(self.account.id, "1.00")
        with pytest.raises(AccountInactiveError):
            self.store.debit(self.account.id, "1.00")

    def test_version_increments(self):
        before = self.store.get_account(self.account.id).version
        self.store.credit(self.account.id, "1.00")
        assert self.store.get_account(self.account.id).version == before + 1

    def test_apply_pair_moves_money(self):
        other = self.store.open_account("user-2", "checking", "USD")
        debit_change, credit_change = self.store.apply_pair(self.account.id, other.id, "60.00")

        assert debit_change.new_balance == Decimal("40.00")
        assert credit_change.new_balance == Decimal("60.00")
        total = sum(self.store.get_account(a).balance for a in (self.account.id, other.id))
        assert total == Decimal("100.00")

    def test_apply_pair_with_smaller_credit(self):
        other = self.store.open_account("user-2", "checking", "USD")
        self.store.apply_pair(self.account.id, other.id, "12.50", credit_amount="10.00")
        assert self.store.get_account(self.account.id).balance == Decimal("87.50")
        assert self.store.get_account(other.id).balance == Decimal("10.00")

    def test_apply_pair_is_all_or_nothing(self):
        other = self.store.open_account("user-2", "checking", "USD")
        self.store.deactivate_account(other.id)

        with pytest.raises(AccountInactiveError):
            self.store.apply_pair(self.account.id, other.id, "10.00")
        assert self.store.get_account(self.account.id).balance == Decimal("100.00")

        active = self.store.open_account("user-2", "checking", "USD")
        with pytest.raises(InsufficientFundsError):
            self.store.apply_pair(self.account.id, active.id, "100.01")
        assert self.store.get_account(active.id).balance == Decimal("0.00")

    def test_apply_pair_same_account(self):
        with pytest.raises(ValidationError):
            self.store.apply_pair(self.account.id, self.account.id, "1.00")

    def test_storage_failure_raises_internal(self):
        self.storage.broken = True
        with pytest.raises(InternalError):
            self.store.debit(self.account.id, "10.00")
        self.storage.broken = False
        assert self.store.get_account(self.account.id).balance == Decimal("100.00")

    def test_lock_wait_is_bounded(self):
        """A held account lock makes a second mutation give up with ContendedError"""
        held = threading.Event()
        release = threading.Event()

        def holder():
            with self.store.locks.hold(self.account.id):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(5)
        try:
            with pytest.raises(ContendedError) as exc_info:
                self.store.debit(self.account.id, "1.00")
            assert exc_info.value.retryable
        finally:
            release.set()
            thread.join()

        assert self.store.get_account(self.account.id).balance == Decimal("100.00")

    def test_concurrent_debits_respect_floor(self):
        """Racing debits never take the balance below zero"""
        store = AccountStore(InMemoryStorage(), lock_timeout=5)
        account = store.open_account("user-1", "checking", "USD", initial_balance="100.00")
        outcomes = []

        def spend():
            try:
                store.debit(account.id, "10.00")
                outcomes.append("ok")
            except InsufficientFundsError:
                outcomes.append("insufficient")

        threads = [threading.Thread(target=spend) for _ in range(25)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("ok") == 10
        assert outcomes.count("insufficient") == 15
        assert store.get_account(account.id).balance == Decimal("0.00")


class TestAccountLocks:
    """Test the per-id lock registry"""

    def setup_method(self):
        self.locks = AccountLocks(0.1)

    def test_lock_released_after_block(self):
        with self.locks.hold("b", "a", "a"):
            assert len(self.locks) == 2
        assert len(self.locks) == 0

    def test_timeout_does_not_leak_entries(self):
        held = threading.Event()
        release = threading.Event()

        def holder():
            with self.locks.hold("a"):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(5)
        try:
            with pytest.raises(ContendedError):
                with self.locks.hold("a", "z"):
                    pass
            assert len(self.locks) == 1
        finally:
            release.set()
            thread.join()

        assert len(self.locks) == 0

    def test_registry_shrinks_under_concurrent_use(self):
        locks = AccountLocks(5.0)
        counter = {"value": 0}

        def work(i):
            for _ in range(50):
                with locks.hold(f"id-{i % 3}", "shared"):
                    counter["value"] += 1

        threads = [threading.Thread(target=work, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert counter["value"] == 400
        assert len(locks) == 0

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            AccountLocks(0)
