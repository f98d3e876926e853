"""
Account Management Module

Owns account records and the atomic balance primitives the ledger engine
builds on. Balances change only through debit, credit and apply_pair; each
runs under the affected accounts' locks and persists in one storage batch,
so a read-modify-write of a balance is never split across unsynchronized
steps and a transfer is never half applied.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union
from enum import Enum
import uuid

from .config import get_config
from .currency import Currency, quantize, to_decimal
from .errors import (
    AccountInactiveError, InsufficientFundsError, InternalError, LedgerError,
    NotFoundError, ValidationError
)
from .locking import AccountLocks
from .logging_config import get_logger, log_action
from .numbering import AccountNumberGenerator
from .storage import StorageInterface, StorageRecord, StorageWrite


class AccountType(Enum):
    """Banking product types"""
    CHECKING = "checking"
    SAVINGS = "savings"
    BUSINESS = "business"
    INVESTMENT = "investment"


@dataclass
class Account(StorageRecord):
    """
    Bank account. Invariant: balance >= -overdraft_limit.
    """
    account_number: str
    owner_id: str
    account_type: AccountType
    currency: Currency
    balance: Decimal = Decimal('0')
    interest_rate: Decimal = Decimal('0.5')
    overdraft_limit: Decimal = Decimal('0')
    is_active: bool = True
    version: int = 0
    deactivated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.account_number:
            raise ValueError("Account number must be assigned before the account exists")
        if self.overdraft_limit < 0:
            raise ValueError("Overdraft limit must be non-negative")

    @property
    def floor(self) -> Decimal:
        """Lowest balance the account may reach"""
        return -self.overdraft_limit

    @property
    def available_to_spend(self) -> Decimal:
        return self.balance + self.overdraft_limit


@dataclass(frozen=True)
class BalanceChange:
    """Result of an applied balance primitive"""
    account_id: str
    old_balance: Decimal
    new_balance: Decimal

    @property
    def delta(self) -> Decimal:
        return self.new_balance - self.old_balance


class AccountStore:
    """
    Manages account lifecycle and balance mutation
    """

    def __init__(
        self,
        storage: StorageInterface,
        number_generator: Optional[AccountNumberGenerator] = None,
        lock_timeout: Optional[float] = None
    ):
        cfg = get_config()
        self.storage = storage
        self.number_generator = number_generator or AccountNumberGenerator()
        self.locks = AccountLocks(lock_timeout if lock_timeout is not None else cfg.lock_timeout_seconds)
        self.accounts_table = "accounts"
        self.logger = get_logger("banking_ledger.accounts")
        self._numbering_lock = AccountLocks(self.locks.timeout)

    def open_account(
        self,
        owner_id: str,
        account_type: Union[AccountType, str],
        currency: Union[Currency, str],
        overdraft_limit: Optional[Union[Decimal, str]] = None,
        interest_rate: Optional[Union[Decimal, str]] = None,
        initial_balance: Union[Decimal, str] = Decimal('0')
    ) -> Account:
        """
        Create a new account.

        The account number is generated and attached before the record is
        persisted; generation, the uniqueness check and the insert run under
        one numbering lock.

        Raises:
            ValidationError: For unknown types/currencies or negative limits
        """
        cfg = get_config()
        if not owner_id:
            raise ValidationError("Owner id is required")
        try:
            account_type = AccountType(getattr(account_type, "value", account_type))
        except ValueError:
            raise ValidationError(f"Invalid account type {account_type!r}")
        currency = Currency.from_code(currency)

        overdraft = to_decimal(overdraft_limit if overdraft_limit is not None else cfg.default_overdraft_limit)
        if overdraft < 0:
            raise ValidationError("Overdraft limit must be non-negative")
        rate = to_decimal(interest_rate if interest_rate is not None else cfg.default_interest_rate)
        balance = quantize(to_decimal(initial_balance), currency)
        if balance < -overdraft:
            raise ValidationError("Opening balance is below the overdraft floor")

        now = datetime.now(timezone.utc)
        with self._numbering_lock.hold("account_numbers"):
            account_number = self.number_generator.generate_unique(self.is_number_taken)
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_number=account_number,
                owner_id=owner_id,
                account_type=account_type,
                currency=currency,
                balance=balance,
                interest_rate=rate,
                overdraft_limit=quantize(overdraft, currency)
            )
            self._commit([account])

        log_action(
            self.logger, "info", f"Account opened: {account.account_number}",
            user_id=owner_id, action="open_account", resource=f"account:{account.id}",
            extra={"account_type": account_type.value, "currency": currency.code}
        )
        return account

    def is_number_taken(self, account_number: str) -> bool:
        return bool(self.storage.find(self.accounts_table, {"account_number": account_number}))

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return self._account_from_dict(data)
        return None

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise NotFoundError(f"Account {account_id} not found", {"account_id": account_id})
        return account

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        accounts = self.storage.find(self.accounts_table, {"account_number": account_number})
        if accounts:
            return self._account_from_dict(accounts[0])
        return None

    def list_accounts(self, owner_id: str) -> List[Account]:
        """Get all accounts for an owner, oldest first"""
        accounts = [self._account_from_dict(data)
                    for data in self.storage.find(self.accounts_table, {"owner_id": owner_id})]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def deactivate_account(self, account_id: str) -> Account:
        """Block new transactions on an account; history is preserved"""
        with self.locks.hold(account_id):
            account = self.require_account(account_id)
            if not account.is_active:
                return account
            now = datetime.now(timezone.utc)
            account.is_active = False
            account.deactivated_at = now
            account.updated_at = now
            account.version += 1
            self._commit([account])
        return account

    def debit(
        self,
        account_id: str,
        amount: Union[Decimal, str],
        records: Iterable[StorageWrite] = ()
    ) -> BalanceChange:
        """
        Take amount from an account, all or nothing.

        Raises:
            NotFoundError, AccountInactiveError, InsufficientFundsError,
            ContendedError, InternalError
        """
        amount = self._positive(amount)
        with self.locks.hold(account_id):
            account = self.require_account(account_id)
            change = self._apply(account, -amount)
            self._commit([account], records)
        return change

    def credit(
        self,
        account_id: str,
        amount: Union[Decimal, str],
        records: Iterable[StorageWrite] = ()
    ) -> BalanceChange:
        """
        Add amount to an active account.

        Raises:
            NotFoundError, AccountInactiveError, ContendedError, InternalError
        """
        amount = self._positive(amount)
        with self.locks.hold(account_id):
            account = self.require_account(account_id)
            change = self._apply(account, amount)
            self._commit([account], records)
        return change

    def apply_pair(
        self,
        debit_account_id: str,
        credit_account_id: str,
        debit_amount: Union[Decimal, str],
        credit_amount: Optional[Union[Decimal, str]] = None,
        records: Iterable[StorageWrite] = ()
    ) -> List[BalanceChange]:
        """
        Debit one account and credit another as a single atomic unit.

        credit_amount defaults to debit_amount; the engine passes a smaller
        credit when a fee stays with the source. Both account locks are taken
        in sorted id order and both records are written in one batch.

        Returns:
            [debit change, credit change]
        """
        if debit_account_id == credit_account_id:
            raise ValidationError("Debit and credit accounts must differ")
        debit_amount = self._positive(debit_amount)
        credit_amount = self._positive(credit_amount if credit_amount is not None else debit_amount)

        with self.locks.hold(debit_account_id, credit_account_id):
            source = self.require_account(debit_account_id)
            destination = self.require_account(credit_account_id)
            if not destination.is_active:
                raise AccountInactiveError(
                    f"Account {destination.id} is inactive", {"account_id": destination.id}
                )
            debit_change = self._apply(source, -debit_amount)
            credit_change = self._apply(destination, credit_amount)
            self._commit([source, destination], records)
        return [debit_change, credit_change]

    @staticmethod
    def _positive(amount: Union[Decimal, str]) -> Decimal:
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError(f"Amount must be positive, got {amount}")
        return amount

    def _apply(self, account: Account, delta: Decimal) -> BalanceChange:
        """Mutate the loaded copy; nothing is visible until _commit"""
        if not account.is_active:
            raise AccountInactiveError(f"Account {account.id} is inactive", {"account_id": account.id})

        old_balance = account.balance
        new_balance = quantize(old_balance + delta, account.currency)
        if delta < 0 and new_balance < account.floor:
            raise InsufficientFundsError(
                f"Insufficient funds: available {account.available_to_spend}, requested {-delta}",
                {
                    "account_id": account.id,
                    "balance": str(old_balance),
                    "overdraft_limit": str(account.overdraft_limit),
                    "requested": str(-delta)
                }
            )

        account.balance = new_balance
        account.version += 1
        account.updated_at = datetime.now(timezone.utc)
        return BalanceChange(account_id=account.id, old_balance=old_balance, new_balance=new_balance)

    def _commit(self, accounts: List[Account], records: Iterable[StorageWrite] = ()) -> None:
        writes = [StorageWrite(self.accounts_table, a.id, self._account_to_dict(a)) for a in accounts]
        writes.extend(records)
        try:
            self.storage.save_batch(writes)
        except LedgerError:
            raise
        except Exception as e:
            self.logger.error(f"Storage failure writing accounts {[a.id for a in accounts]}: {e}")
            raise InternalError(f"Storage failure: {e}") from e

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['currency'] = account.currency.code
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        deactivated_at = None
        if data.get('deactivated_at'):
            deactivated_at = datetime.fromisoformat(data['deactivated_at'])

        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            owner_id=data['owner_id'],
            account_type=AccountType(data['account_type']),
            currency=Currency[data['currency']],
            balance=Decimal(data['balance']),
            interest_rate=Decimal(data['interest_rate']),
            overdraft_limit=Decimal(data['overdraft_limit']),
            is_active=data['is_active'],
            version=data.get('version', 0),
            deactivated_at=deactivated_at
        )
