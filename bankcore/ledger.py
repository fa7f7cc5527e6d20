"""
Ledger / Balance Engine

The transaction log is the sole source of truth for balances. Each account
carries a cached balance which may lag the log by at most the staleness
window; a full recompute from the log is always available.

Balance rule: deposit and interest add their amount, withdrawal,
service_charge and bankfee subtract it. The sign is derived from the type and
never stored.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from enum import Enum
import uuid

from .accounts import Account, AccountManager
from .errors import ValidationError
from .money import ZERO, AmountLike, validate_amount
from .storage import StorageInterface, StorageRecord, parse_datetime
from .logging_config import get_logger, log_action


class TransactionType(Enum):
    """Closed set of ledger entry types"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INTEREST = "interest"
    SERVICE_CHARGE = "service_charge"
    BANKFEE = "bankfee"

    @property
    def sign(self) -> int:
        """+1 for credits to the account, -1 for debits"""
        if self in (TransactionType.DEPOSIT, TransactionType.INTEREST):
            return 1
        return -1


def parse_transaction_type(value) -> TransactionType:
    """Validate a transaction type at the storage/API boundary"""
    if isinstance(value, TransactionType):
        return value
    try:
        return TransactionType(value)
    except ValueError:
        raise ValidationError(f"Unknown transaction type: {value!r}")


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """[start, end) of a calendar month in UTC"""
    if not 1 <= month <= 12:
        raise ValidationError(f"Invalid month: {month}")
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


@dataclass
class Transaction(StorageRecord):
    """
    Immutable ledger entry
    """
    account_id: str
    transaction_type: TransactionType
    amount: Decimal                          # Always positive
    timestamp: datetime
    description: str
    created_by: str
    linked_transaction_id: Optional[str] = None  # Withdrawal and its mirror deposit point at each other
    job_id: Optional[str] = None
    task_id: Optional[str] = None                # Withdrawal task that produced this entry
    customer_account_id: Optional[str] = None    # Customer behind a mirror deposit

    @property
    def signed_amount(self) -> Decimal:
        return self.amount * self.transaction_type.sign

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['timestamp'] = parse_datetime(data['timestamp'])
        data['transaction_type'] = parse_transaction_type(data['transaction_type'])
        data['amount'] = Decimal(data['amount'])
        return cls(**data)


@dataclass
class TransactionSummary:
    """Per-type totals over a set of transactions"""
    deposits: Decimal = ZERO
    withdrawals: Decimal = ZERO
    service_charges: Decimal = ZERO   # service_charge and bankfee
    interest: Decimal = ZERO
    balance: Decimal = ZERO
    transaction_count: int = 0


class Ledger:
    """
    Computes and caches balances and appends transactions
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        cache_ttl: timedelta = timedelta(hours=24),
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.cache_ttl = cache_ttl
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.table_name = "transactions"
        self.logger = get_logger("bankcore.ledger")

    # Balances

    def _cache_is_fresh(self, account: Account) -> bool:
        if account.cached_balance is None or account.cached_balance_updated_at is None:
            return False
        return self.clock() - account.cached_balance_updated_at < self.cache_ttl

    def _sum_log(self, account_id: str) -> Tuple[Decimal, int]:
        """Signed sum and count of every transaction for the account"""
        balance = ZERO
        count = 0
        for data in self.storage.find(self.table_name, {'account_id': account_id}):
            balance += Transaction.from_dict(data).signed_amount
            count += 1
        return balance, count

    def get_balance(self, account_id: str) -> Decimal:
        """
        Balance for display paths; never raises

        Uses the cached balance when it is younger than the staleness window,
        otherwise recomputes from the log and refreshes the cache (best effort).
        If the log cannot be read the error is logged and 0.00 is returned.
        """
        try:
            account = self.account_manager.get_account(account_id)
        except Exception as e:
            self.logger.warning(f"Could not load account {account_id}: {e}")
            account = None

        try:
            if account is not None and self._cache_is_fresh(account):
                return account.cached_balance
        except Exception as e:
            # An unusable cache counts as stale
            self.logger.warning(f"Ignoring cached balance for {account_id}: {e}")

        try:
            return self._recompute(account_id, persist=account is not None)
        except Exception as e:
            log_action(self.logger, "error", f"Error calculating balance for {account_id}: {e}",
                       action="get_balance", resource=account_id)
            return ZERO

    def recompute_balance(self, account_id: str, persist: bool = True) -> Decimal:
        """
        Ground-truth balance from the full log

        Args:
            account_id: Account to recompute
            persist: Refresh the cached balance afterwards (best effort)

        Returns:
            Signed sum of all transactions for the account
        """
        return self._recompute(account_id, persist)

    def _recompute(self, account_id: str, persist: bool) -> Decimal:
        # Sum and cache write share a unit so a concurrent append cannot slip between them
        with self.storage.atomic():
            balance, count = self._sum_log(account_id)
            if persist:
                try:
                    self.account_manager.update_balance_cache(account_id, balance, count, self.clock())
                except Exception as e:
                    self.logger.warning(f"Could not cache balance for {account_id}: {e}")
        return balance

    # Transactions

    def append_transaction(
        self,
        account_id: str,
        transaction_type,
        amount: AmountLike,
        description: str,
        created_by: str,
        linked_transaction_id: Optional[str] = None,
        job_id: Optional[str] = None,
        task_id: Optional[str] = None,
        customer_account_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        transaction_id: Optional[str] = None
    ) -> Transaction:
        """
        Append a transaction and move the cached balance by its signed amount
        in one atomic unit

        Args:
            account_id: Account the entry belongs to
            transaction_type: TransactionType (or its string value)
            amount: Strictly positive amount with at most 2 decimal places
            description: Human-readable description
            created_by: Identity that caused the entry
            linked_transaction_id: The counterpart entry (mirror <-> withdrawal)
            job_id: Batch job that created the entry
            task_id: Withdrawal task that created the entry
            customer_account_id: For mirror deposits, the customer account
            timestamp: Effective time (defaults to now)
            transaction_id: Pre-assigned id (generated if omitted)

        Returns:
            Persisted Transaction
        """
        transaction_type = parse_transaction_type(transaction_type)
        amount = validate_amount(amount)
        now = self.clock()

        transaction = Transaction(
            id=transaction_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            transaction_type=transaction_type,
            amount=amount,
            timestamp=timestamp or now,
            description=description or "",
            created_by=created_by,
            linked_transaction_id=linked_transaction_id,
            job_id=job_id,
            task_id=task_id,
            customer_account_id=customer_account_id
        )

        with self.storage.atomic():
            account = self.account_manager.require_account(account_id)
            if self._cache_is_fresh(account):
                balance = account.cached_balance
                count = account.cached_transaction_count
            else:
                balance, count = self._sum_log(account_id)

            self.storage.insert(self.table_name, transaction.id, transaction.to_dict())
            self.account_manager.update_balance_cache(
                account_id, balance + transaction.signed_amount, count + 1, now
            )

        log_action(
            self.logger, "info",
            f"Appended {transaction_type.value} of {amount} to {account_id}",
            user_id=created_by, action="append_transaction", resource=transaction.id
        )
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def find_transactions(self, filters: Dict[str, Any]) -> List[Transaction]:
        """Transactions whose stored fields equal every filter value"""
        return [Transaction.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def get_transactions(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        transaction_type=None
    ) -> List[Transaction]:
        """
        Transactions for an account, newest first

        Args:
            account_id: Account to list
            start: Earliest timestamp (inclusive)
            end: Latest timestamp (exclusive)
            transaction_type: Only this type
        """
        filters: Dict[str, Any] = {'account_id': account_id}
        if transaction_type is not None:
            filters['transaction_type'] = parse_transaction_type(transaction_type).value

        transactions = self.find_transactions(filters)
        if start:
            transactions = [t for t in transactions if t.timestamp >= start]
        if end:
            transactions = [t for t in transactions if t.timestamp < end]

        transactions.sort(key=lambda t: t.timestamp, reverse=True)
        return transactions

    def has_transaction_in_month(self, account_id: str, transaction_type,
                                 year: int, month: int) -> bool:
        """Whether the account has an entry of this type in the calendar month"""
        start, end = month_bounds(year, month)
        return bool(self.get_transactions(account_id, start, end, transaction_type))

    @staticmethod
    def summarize(transactions: List[Transaction]) -> TransactionSummary:
        """Totals per type and the resulting balance"""
        summary = TransactionSummary()
        for transaction in transactions:
            kind = transaction.transaction_type
            if kind == TransactionType.DEPOSIT:
                summary.deposits += transaction.amount
            elif kind == TransactionType.INTEREST:
                summary.interest += transaction.amount
            elif kind == TransactionType.WITHDRAWAL:
                summary.withdrawals += transaction.amount
            else:
                summary.service_charges += transaction.amount
            summary.balance += transaction.signed_amount
            summary.transaction_count += 1
        return summary
