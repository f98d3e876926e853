"""
Transaction Processing Module

The ledger engine: validates transaction requests, computes fees and
exchange rates, settles balance changes through the AccountStore's atomic
primitives, accrues rewards and drives every transaction through
pending -> completed | failed, or pending -> cancelled.

Business-rule failures (insufficient funds, inactive or missing accounts,
unavailable conversions) are recorded on a failed Transaction and returned,
never raised. Malformed requests raise ValidationError before anything is
stored. Lock contention raises ContendedError and leaves the transaction
pending so the same request can be retried.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Set, Union
from enum import Enum
import threading
import uuid

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .accounts import Account, AccountStore, AccountType
from .audit import AuditEventType, AuditTrail
from .config import get_config
from .currency import Currency, CurrencyConverter, RateQuote, quantize
from .errors import (
    AccountInactiveError, ContendedError, FailureCode, InsufficientFundsError,
    InternalError, InvalidStateError, LedgerError, NotFoundError, ValidationError
)
from .fees import FeeCalculator
from .locking import AccountLocks
from .logging_config import get_logger, log_action
from .numbering import AccountNumberGenerator
from .rewards import RewardAccrual
from .storage import StorageInterface, StorageRecord, StorageWrite, create_storage


class TransactionType(Enum):
    """Types of ledger transactions"""
    TRANSFER = "transfer"            # Between two accounts of this ledger
    DEPOSIT = "deposit"              # Credits the source account
    WITHDRAWAL = "withdrawal"        # Cash out of the source account
    PAYMENT = "payment"              # Bill or merchant payment
    INTERNATIONAL = "international"  # Outbound to a foreign recipient

    @property
    def is_debiting(self) -> bool:
        return self != TransactionType.DEPOSIT


class TransactionStatus(Enum):
    """States of a transaction"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != TransactionStatus.PENDING


class TransactionCategory(Enum):
    """Free classification of a transaction"""
    FOOD = "food"
    SHOPPING = "shopping"
    BILLS = "bills"
    ENTERTAINMENT = "entertainment"
    TRANSPORT = "transport"
    HEALTHCARE = "healthcare"
    OTHER = "other"


MINIMUM_AMOUNT = Decimal('0.01')


@dataclass(frozen=True)
class Recipient:
    """External beneficiary of an international transaction"""
    name: str
    account_number: str
    bank_name: str
    country: str
    currency: Optional[Currency] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "account_number": self.account_number,
            "bank_name": self.bank_name,
            "country": self.country,
            "currency": self.currency.code if self.currency else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Recipient':
        return cls(
            name=data["name"],
            account_number=data["account_number"],
            bank_name=data["bank_name"],
            country=data["country"],
            currency=Currency[data["currency"]] if data.get("currency") else None,
        )


class RecipientModel(BaseModel):
    name: Optional[str] = None
    account_number: Optional[str] = None
    bank_name: Optional[str] = None
    country: Optional[str] = None
    currency: Optional[str] = None


class TransactionRequest(BaseModel):
    """Shape validation for a submitted transaction"""
    requester_id: str = Field(..., min_length=1)
    source_account_id: str = Field(..., min_length=1)
    transaction_type: TransactionType
    amount: Decimal = Field(..., ge=MINIMUM_AMOUNT, allow_inf_nan=False)
    description: str
    currency: Optional[str] = None
    destination_account_id: Optional[str] = None
    category: TransactionCategory = TransactionCategory.OTHER
    recipient: Optional[RecipientModel] = None
    idempotency_key: Optional[str] = None

    @field_validator('description')
    @classmethod
    def description_present(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Description is required")
        return value

    @model_validator(mode='after')
    def check_endpoints(self) -> 'TransactionRequest':
        if self.transaction_type == TransactionType.TRANSFER:
            if not self.destination_account_id:
                raise ValueError("Transfers require a destination account")
        elif self.destination_account_id:
            raise ValueError(f"{self.transaction_type.value} transactions take no destination account")

        if self.transaction_type == TransactionType.INTERNATIONAL:
            recipient = self.recipient
            missing = [name for name in ("name", "account_number", "bank_name", "country")
                       if recipient is None or not (getattr(recipient, name) or "").strip()]
            if missing:
                raise ValueError(f"International transactions require recipient {', '.join(missing)}")
        return self


@dataclass
class Transaction(StorageRecord):
    """
    Ledger transaction. Immutable once it leaves PENDING.
    """
    owner_id: str                      # Requesting user
    source_account_id: str
    transaction_type: TransactionType
    amount: Decimal
    currency: Currency
    description: str
    category: TransactionCategory = TransactionCategory.OTHER
    destination_account_id: Optional[str] = None
    recipient: Optional[Recipient] = None
    fee: Decimal = Decimal('0')
    exchange_rate: Decimal = Decimal('1')
    rate_is_fallback: bool = False
    total_debit: Decimal = Decimal('0')
    status: TransactionStatus = TransactionStatus.PENDING
    idempotency_key: Optional[str] = None
    failure_code: Optional[FailureCode] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount < MINIMUM_AMOUNT:
            raise ValueError(f"Transaction amount must be at least {MINIMUM_AMOUNT}")
        if self.fee < 0:
            raise ValueError("Transaction fee must be non-negative")
        if self.transaction_type == TransactionType.TRANSFER and not self.destination_account_id:
            raise ValueError("Transfer requires a destination account")
        if self.transaction_type != TransactionType.TRANSFER and self.destination_account_id:
            raise ValueError("Only transfers have a destination account")
        if self.transaction_type == TransactionType.INTERNATIONAL and not self.recipient:
            raise ValueError("International transaction requires a recipient")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == TransactionStatus.FAILED

    @property
    def target_currency(self) -> Currency:
        """Currency the recipient is paid in"""
        if self.recipient and self.recipient.currency:
            return self.recipient.currency
        return self.currency

    @property
    def recipient_amount(self) -> Decimal:
        """Amount the recipient receives after conversion"""
        return quantize(self.amount * self.exchange_rate, self.target_currency)


@dataclass
class AccountSummary:
    """Read-only view of an account and its latest activity"""
    account: Account
    recent_transactions: List[Transaction] = field(default_factory=list)


@dataclass
class UserOverview:
    """
    Everything a user sees on landing: their accounts, balances totalled per
    currency, how many accounts of each type they hold, the latest activity
    across all accounts and their reward points.
    """
    owner_id: str
    accounts: List[Account]
    total_balances: Dict[str, Decimal]
    account_type_counts: Dict[str, int]
    recent_transactions: List[Transaction]
    rewards_balance: int


class LedgerEngine:
    """
    Orchestrates the full lifecycle of ledger transactions
    """

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        account_store: Optional[AccountStore] = None,
        fee_calculator: Optional[FeeCalculator] = None,
        converter: Optional[CurrencyConverter] = None,
        rewards: Optional[RewardAccrual] = None,
        audit_trail: Optional[AuditTrail] = None,
        number_generator: Optional[AccountNumberGenerator] = None,
        lock_timeout: Optional[float] = None
    ):
        cfg = get_config()
        self.storage = storage or create_storage(cfg.database_url)
        timeout = lock_timeout if lock_timeout is not None else cfg.lock_timeout_seconds
        self.accounts = account_store or AccountStore(self.storage, number_generator, timeout)
        self.fees = fee_calculator or FeeCalculator()
        self.converter = converter or CurrencyConverter(policy=cfg.conversion_policy)
        self.rewards = rewards or RewardAccrual(self.storage, lock_timeout=timeout)
        if audit_trail is None and cfg.enable_audit_logging:
            audit_trail = AuditTrail(self.storage)
        self.audit_trail = audit_trail
        self.recent_limit = cfg.recent_transactions_limit
        self.overview_limit = cfg.overview_transactions_limit
        self.table_name = "transactions"
        self.logger = get_logger("banking_ledger.transactions")

        # Transactions currently being processed or cancelled
        self._in_flight: Set[str] = set()
        self._in_flight_lock = threading.Lock()
        # Serializes creation per idempotency key
        self._request_locks = AccountLocks(timeout)

    # Accounts

    def open_account(
        self,
        owner_id: str,
        account_type: Union[AccountType, str],
        currency: Union[Currency, str],
        overdraft_limit: Optional[Union[Decimal, str]] = None,
        interest_rate: Optional[Union[Decimal, str]] = None
    ) -> Account:
        """Open a zero-balance account with a freshly issued account number"""
        account = self.accounts.open_account(
            owner_id=owner_id,
            account_type=account_type,
            currency=currency,
            overdraft_limit=overdraft_limit,
            interest_rate=interest_rate
        )
        self._audit(AuditEventType.ACCOUNT_OPENED, "account", account.id, {
            "account_number": account.account_number,
            "account_type": account.account_type.value,
            "currency": account.currency.code,
            "overdraft_limit": account.overdraft_limit
        }, user_id=owner_id)
        return account

    def seed_account(
        self,
        owner_id: str,
        account_type: Union[AccountType, str],
        currency: Union[Currency, str],
        balance: Union[Decimal, str],
        overdraft_limit: Optional[Union[Decimal, str]] = None
    ) -> Account:
        """Open a system-seeded account with a non-zero opening balance"""
        account = self.accounts.open_account(
            owner_id=owner_id,
            account_type=account_type,
            currency=currency,
            overdraft_limit=overdraft_limit,
            initial_balance=balance
        )
        self._audit(AuditEventType.ACCOUNT_SEEDED, "account", account.id, {
            "account_number": account.account_number,
            "opening_balance": account.balance,
            "currency": account.currency.code
        }, user_id="system")
        return account

    def deactivate_account(self, account_id: str, reason: str) -> Account:
        """Deactivate an account; its history is preserved"""
        account = self.accounts.deactivate_account(account_id)
        self._audit(AuditEventType.ACCOUNT_DEACTIVATED, "account", account.id, {"reason": reason})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        return self.accounts.get_account(account_id)

    def list_accounts(self, owner_id: str) -> List[Account]:
        return self.accounts.list_accounts(owner_id)

    # Transactions

    def create_transaction(
        self,
        requester_id: str,
        source_account_id: str,
        transaction_type: Union[TransactionType, str],
        amount: Union[Decimal, str],
        description: str,
        currency: Optional[Union[Currency, str]] = None,
        destination_account_id: Optional[str] = None,
        category: Optional[Union[TransactionCategory, str]] = None,
        recipient: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """
        Validate a request and persist it as a PENDING transaction.

        A request carrying an idempotency key already used by the same
        requester returns the existing transaction instead.

        Raises:
            ValidationError: Malformed request (nothing is stored)
            NotFoundError: Source account missing or not owned by the requester
        """
        request = self._parse_request(
            requester_id=requester_id,
            source_account_id=source_account_id,
            transaction_type=transaction_type,
            amount=amount,
            description=description,
            currency=currency.code if isinstance(currency, Currency) else currency,
            destination_account_id=destination_account_id,
            category=category if category is not None else TransactionCategory.OTHER,
            recipient=recipient,
            idempotency_key=idempotency_key
        )

        if not request.idempotency_key:
            return self._create(request)

        with self._request_locks.hold(f"{request.requester_id}:{request.idempotency_key}"):
            existing = self._find_by_idempotency_key(request.requester_id, request.idempotency_key)
            if existing:
                return existing
            return self._create(request)

    def process_transaction(self, transaction_id: str) -> Transaction:
        """
        Settle a PENDING transaction. Terminal transactions are returned as is.

        Returns:
            The COMPLETED or FAILED transaction

        Raises:
            NotFoundError: Unknown transaction
            ContendedError: Lock wait exceeded; the transaction stays PENDING
            InternalError: Storage failure; no balance change is visible
        """
        transaction = self._require_transaction(transaction_id)
        if transaction.is_terminal:
            return transaction

        self._claim(transaction_id, ContendedError(
            f"Transaction {transaction_id} is already being processed",
            {"transaction_id": transaction_id}
        ))
        try:
            transaction = self._require_transaction(transaction_id)
            if transaction.is_terminal:
                return transaction
            return self._settle(transaction)
        finally:
            self._release(transaction_id)

    def submit_transaction(
        self,
        requester_id: str,
        source_account_id: str,
        transaction_type: Union[TransactionType, str],
        amount: Union[Decimal, str],
        description: str,
        currency: Optional[Union[Currency, str]] = None,
        destination_account_id: Optional[str] = None,
        category: Optional[Union[TransactionCategory, str]] = None,
        recipient: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """
        Create and settle a transaction in one call.

        Returns the COMPLETED or FAILED transaction; business-rule failures
        are reported through failure_code, not raised.
        """
        transaction = self.create_transaction(
            requester_id=requester_id,
            source_account_id=source_account_id,
            transaction_type=transaction_type,
            amount=amount,
            description=description,
            currency=currency,
            destination_account_id=destination_account_id,
            category=category,
            recipient=recipient,
            idempotency_key=idempotency_key
        )
        if transaction.is_terminal:
            return transaction
        return self.process_transaction(transaction.id)

    def cancel_transaction(
        self,
        transaction_id: str,
        requester_id: Optional[str] = None,
        reason: str = ""
    ) -> Transaction:
        """
        Cancel a PENDING transaction whose processing has not begun.

        Raises:
            NotFoundError: Unknown transaction (or not the requester's)
            InvalidStateError: Already terminal or being processed
        """
        transaction = self._require_transaction(transaction_id)
        if requester_id is not None and transaction.owner_id != requester_id:
            raise NotFoundError(f"Transaction {transaction_id} not found", {"transaction_id": transaction_id})

        self._claim(transaction_id, InvalidStateError(
            f"Transaction {transaction_id} is being processed and cannot be cancelled",
            {"transaction_id": transaction_id}
        ))
        try:
            transaction = self._require_transaction(transaction_id)
            if transaction.status != TransactionStatus.PENDING:
                raise InvalidStateError(
                    f"Cannot cancel transaction in {transaction.status.value} state",
                    {"transaction_id": transaction_id, "status": transaction.status.value}
                )

            now = datetime.now(timezone.utc)
            transaction.status = TransactionStatus.CANCELLED
            transaction.cancelled_at = now
            transaction.updated_at = now
            self._write([self._transaction_write(transaction)])
        finally:
            self._release(transaction_id)

        log_action(
            self.logger, "info", f"Transaction cancelled: {transaction.id}",
            user_id=transaction.owner_id, action="cancel_transaction",
            resource=f"transaction:{transaction.id}", extra={"reason": reason}
        )
        self._audit(AuditEventType.TRANSACTION_CANCELLED, "transaction", transaction.id,
                    {"reason": reason}, user_id=requester_id)
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None

    def get_account_summary(
        self,
        account_id: str,
        requester_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> AccountSummary:
        """
        An account with its most recent transactions (as source or
        destination), newest first. Read-only.
        """
        account = self.accounts.get_account(account_id)
        if not account or (requester_id is not None and account.owner_id != requester_id):
            raise NotFoundError(f"Account {account_id} not found", {"account_id": account_id})
        recent = self._account_transactions(account_id)
        return AccountSummary(account=account, recent_transactions=recent[:limit or self.recent_limit])

    def list_transactions(
        self,
        owner_id: str,
        account_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Transaction]:
        """Transaction history across a user's accounts, newest first"""
        if account_id:
            account_ids = [self.get_account_summary(account_id, requester_id=owner_id).account.id]
        else:
            account_ids = [account.id for account in self.accounts.list_accounts(owner_id)]

        seen: Dict[str, Transaction] = {}
        for acc_id in account_ids:
            for transaction in self._account_transactions(acc_id):
                seen[transaction.id] = transaction

        history = sorted(seen.values(), key=lambda t: t.created_at, reverse=True)
        return history[:limit] if limit else history

    def get_rewards_balance(self, user_id: str) -> int:
        return self.rewards.get_balance(user_id)

    def get_user_overview(self, owner_id: str, limit: Optional[int] = None) -> UserOverview:
        """
        Read-only overview of a user's holdings.

        Balances are only summed within a currency; accounts in different
        currencies produce separate totals.
        """
        accounts = self.accounts.list_accounts(owner_id)

        total_balances: Dict[str, Decimal] = {}
        account_type_counts: Dict[str, int] = {}
        for account in accounts:
            code = account.currency.code
            total_balances[code] = total_balances.get(code, Decimal('0')) + account.balance
            kind = account.account_type.value
            account_type_counts[kind] = account_type_counts.get(kind, 0) + 1

        return UserOverview(
            owner_id=owner_id,
            accounts=accounts,
            total_balances=total_balances,
            account_type_counts=account_type_counts,
            recent_transactions=self.list_transactions(owner_id, limit=limit or self.overview_limit),
            rewards_balance=self.rewards.get_balance(owner_id)
        )

    # Internals

    def _parse_request(self, **fields: Any) -> TransactionRequest:
        try:
            return TransactionRequest(**fields)
        except PydanticValidationError as e:
            errors = [
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            message = "; ".join(
                f"{err['field']}: {err['message']}" if err["field"] else err["message"]
                for err in errors
            )
            raise ValidationError(f"Validation failed: {message}", errors) from e

    def _create(self, request: TransactionRequest) -> Transaction:
        source = self.accounts.get_account(request.source_account_id)
        if not source or source.owner_id != request.requester_id:
            raise NotFoundError(
                "Source account not found",
                {"account_id": request.source_account_id}
            )

        currency = Currency.from_code(request.currency) if request.currency else source.currency
        if currency != source.currency:
            raise ValidationError(
                f"Transaction currency {currency.code} does not match account currency {source.currency.code}"
            )

        amount = quantize(request.amount, currency)
        if amount != request.amount:
            raise ValidationError(f"Amount {request.amount} has more precision than {currency.code} allows")

        if request.destination_account_id == source.id:
            raise ValidationError("Cannot transfer to the same account")

        recipient = None
        if request.recipient is not None:
            r = request.recipient
            recipient = Recipient(
                name=(r.name or "").strip(),
                account_number=(r.account_number or "").strip(),
                bank_name=(r.bank_name or "").strip(),
                country=(r.country or "").strip(),
                currency=Currency.from_code(r.currency) if r.currency else None
            )

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=request.requester_id,
            source_account_id=source.id,
            transaction_type=request.transaction_type,
            amount=amount,
            currency=currency,
            description=request.description,
            category=request.category,
            destination_account_id=request.destination_account_id,
            recipient=recipient,
            idempotency_key=request.idempotency_key
        )
        self._write([self._transaction_write(transaction)])

        log_action(
            self.logger, "info", f"Transaction created: {transaction.transaction_type.value}",
            user_id=transaction.owner_id, action="create_transaction",
            resource=f"transaction:{transaction.id}",
            extra={
                "amount": str(amount),
                "currency": currency.code,
                "source_account": source.id,
                "destination_account": transaction.destination_account_id
            }
        )
        self._audit(AuditEventType.TRANSACTION_CREATED, "transaction", transaction.id, {
            "transaction_type": transaction.transaction_type.value,
            "amount": amount,
            "currency": currency.code,
            "source_account": source.id,
            "destination_account": transaction.destination_account_id
        }, user_id=transaction.owner_id)
        return transaction

    def _settle(self, transaction: Transaction) -> Transaction:
        try:
            source = self.accounts.require_account(transaction.source_account_id)
            if not source.is_active:
                raise AccountInactiveError(f"Account {source.id} is inactive", {"account_id": source.id})

            destination = None
            if transaction.transaction_type == TransactionType.TRANSFER:
                destination = self.accounts.get_account(transaction.destination_account_id)
                if not destination:
                    raise NotFoundError(
                        "Destination account not found",
                        {"account_id": transaction.destination_account_id}
                    )
                if not destination.is_active:
                    raise AccountInactiveError(
                        f"Account {destination.id} is inactive", {"account_id": destination.id}
                    )
                if destination.currency != transaction.currency:
                    raise ValidationError(
                        f"Cannot transfer {transaction.currency.code} into a "
                        f"{destination.currency.code} account"
                    )

            is_international = transaction.transaction_type == TransactionType.INTERNATIONAL
            transaction.fee = self.fees.fee(
                transaction.transaction_type, transaction.amount, is_international, transaction.currency
            )
            quote = self._rate_for(transaction)
            transaction.exchange_rate = quote.rate
            transaction.rate_is_fallback = quote.is_fallback

            if transaction.transaction_type.is_debiting:
                transaction.total_debit = transaction.amount + transaction.fee
                # Fail fast; the store repeats this check under the account lock
                if source.balance - transaction.total_debit < source.floor:
                    raise InsufficientFundsError(
                        f"Insufficient funds: available {source.available_to_spend}, "
                        f"requested {transaction.total_debit}",
                        {"account_id": source.id, "requested": str(transaction.total_debit)}
                    )

            now = datetime.now(timezone.utc)
            settled = replace(
                transaction,
                status=TransactionStatus.COMPLETED,
                completed_at=now,
                updated_at=now
            )
            records = [self._transaction_write(settled)]

            if transaction.transaction_type == TransactionType.DEPOSIT:
                self.accounts.credit(source.id, transaction.amount, records)
            elif destination is not None:
                self.accounts.apply_pair(
                    source.id, destination.id,
                    debit_amount=transaction.total_debit,
                    credit_amount=transaction.amount,
                    records=records
                )
            else:
                self.accounts.debit(source.id, transaction.total_debit, records)

        except ContendedError:
            log_action(
                self.logger, "warning", f"Transaction {transaction.id} contended, left pending",
                user_id=transaction.owner_id, action="process_transaction",
                resource=f"transaction:{transaction.id}"
            )
            raise
        except InternalError as e:
            self._record_internal_failure(transaction, e)
            raise
        except LedgerError as e:
            return self._fail(transaction, e)

        log_action(
            self.logger, "info", f"Transaction completed: {settled.transaction_type.value}",
            user_id=settled.owner_id, action="process_transaction",
            resource=f"transaction:{settled.id}",
            extra={
                "amount": str(settled.amount),
                "fee": str(settled.fee),
                "exchange_rate": str(settled.exchange_rate),
                "rate_is_fallback": settled.rate_is_fallback
            }
        )
        self._audit(AuditEventType.TRANSACTION_COMPLETED, "transaction", settled.id, {
            "amount": settled.amount,
            "fee": settled.fee,
            "total_debit": settled.total_debit,
            "exchange_rate": settled.exchange_rate,
            "rate_is_fallback": settled.rate_is_fallback
        }, user_id=settled.owner_id)

        self._accrue_rewards(settled)
        return settled

    def _rate_for(self, transaction: Transaction) -> RateQuote:
        if transaction.transaction_type != TransactionType.INTERNATIONAL:
            return RateQuote(source=transaction.currency, target=transaction.currency, rate=Decimal('1'))
        return self.converter.quote(transaction.currency, transaction.target_currency)

    def _fail(self, transaction: Transaction, error: LedgerError) -> Transaction:
        now = datetime.now(timezone.utc)
        transaction.status = TransactionStatus.FAILED
        transaction.failure_code = error.code
        transaction.error_message = error.message
        transaction.failed_at = now
        transaction.updated_at = now
        self._write([self._transaction_write(transaction)])

        log_action(
            self.logger, "warning", f"Transaction failed: {error.message}",
            user_id=transaction.owner_id, action="process_transaction",
            resource=f"transaction:{transaction.id}",
            extra={"failure_code": error.code.value}
        )
        self._audit(AuditEventType.TRANSACTION_FAILED, "transaction", transaction.id, {
            "failure_code": error.code.value,
            "error_message": error.message
        }, user_id=transaction.owner_id)
        return transaction

    def _record_internal_failure(self, transaction: Transaction, error: InternalError) -> None:
        """Mark the transaction failed after a storage error, if storage allows it"""
        try:
            self._fail(transaction, error)
        except Exception as write_error:
            self.logger.error(
                f"Could not record failure of transaction {transaction.id}: {write_error}"
            )

    def _accrue_rewards(self, transaction: Transaction) -> None:
        try:
            points = self.rewards.accrue(transaction.owner_id, transaction.amount)
        except Exception as e:
            self.logger.exception(
                f"Reward accrual failed for transaction {transaction.id}, needs reconciliation"
            )
            self._audit(AuditEventType.REWARDS_ACCRUAL_FAILED, "rewards", transaction.owner_id, {
                "transaction_id": transaction.id,
                "amount": transaction.amount,
                "error": str(e)
            }, user_id=transaction.owner_id)
            return

        if points:
            self._audit(AuditEventType.REWARDS_ACCRUED, "rewards", transaction.owner_id, {
                "transaction_id": transaction.id,
                "points": points
            }, user_id=transaction.owner_id)

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               metadata: Dict[str, Any], user_id: Optional[str] = None) -> None:
        """Write an audit event; a failing audit write never undoes a settled change"""
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                user_id=user_id
            )
        except Exception as e:
            self.logger.error(f"Error writing audit event {event_type.value} for {entity_id}: {e}")

    def _claim(self, transaction_id: str, busy_error: LedgerError) -> None:
        with self._in_flight_lock:
            if transaction_id in self._in_flight:
                raise busy_error
            self._in_flight.add(transaction_id)

    def _release(self, transaction_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(transaction_id)

    def _require_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise NotFoundError(f"Transaction {transaction_id} not found", {"transaction_id": transaction_id})
        return transaction

    def _account_transactions(self, account_id: str) -> List[Transaction]:
        found: Dict[str, Dict[str, Any]] = {}
        for key in ("source_account_id", "destination_account_id"):
            for data in self.storage.find(self.table_name, {key: account_id}):
                found[data['id']] = data
        transactions = [self._transaction_from_dict(data) for data in found.values()]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions

    def _find_by_idempotency_key(self, requester_id: str, idempotency_key: str) -> Optional[Transaction]:
        matches = self.storage.find(self.table_name, {
            "idempotency_key": idempotency_key,
            "owner_id": requester_id
        })
        if matches:
            return self._transaction_from_dict(matches[0])
        return None

    def _transaction_write(self, transaction: Transaction) -> StorageWrite:
        """Build the storage write for a transaction, refusing to touch a terminal record"""
        existing = self.storage.load(self.table_name, transaction.id)
        if existing and TransactionStatus(existing['status']).is_terminal:
            raise InvalidStateError(
                f"Transaction {transaction.id} is {existing['status']} and immutable",
                {"transaction_id": transaction.id}
            )
        return StorageWrite(self.table_name, transaction.id, self._transaction_to_dict(transaction))

    def _write(self, writes: List[StorageWrite]) -> None:
        try:
            self.storage.save_batch(writes)
        except Exception as e:
            self.logger.error(f"Storage failure writing transactions: {e}")
            raise InternalError(f"Storage failure: {e}") from e

    def _transaction_to_dict(self, transaction: Transaction) -> Dict[str, Any]:
        """Convert Transaction to dictionary for storage"""
        result = transaction.to_dict()
        result['currency'] = transaction.currency.code
        result['recipient'] = transaction.recipient.to_dict() if transaction.recipient else None
        return result

    def _transaction_from_dict(self, data: Dict[str, Any]) -> Transaction:
        """Convert dictionary to Transaction"""
        def timestamp(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_id=data['owner_id'],
            source_account_id=data['source_account_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Decimal(data['amount']),
            currency=Currency[data['currency']],
            description=data['description'],
            category=TransactionCategory(data['category']),
            destination_account_id=data.get('destination_account_id'),
            recipient=Recipient.from_dict(data['recipient']) if data.get('recipient') else None,
            fee=Decimal(data['fee']),
            exchange_rate=Decimal(data['exchange_rate']),
            rate_is_fallback=data.get('rate_is_fallback', False),
            total_debit=Decimal(data['total_debit']),
            status=TransactionStatus(data['status']),
            idempotency_key=data.get('idempotency_key'),
            failure_code=FailureCode(data['failure_code']) if data.get('failure_code') else None,
            error_message=data.get('error_message'),
            completed_at=timestamp('completed_at'),
            failed_at=timestamp('failed_at'),
            cancelled_at=timestamp('cancelled_at')
        )
