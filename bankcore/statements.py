"""
Monthly Statement Generation

Builds per-account statement data for one calendar month. Rendering and
delivery belong to external services; a failure on one account is recorded
in the batch and the remaining accounts are still processed.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import uuid

from .accounts import Account, AccountManager, Caller
from .audit import AuditTrail
from .errors import NotFoundError, PermissionDeniedError
from .ledger import Ledger, Transaction, TransactionSummary, month_bounds
from .logging_config import get_logger


JOB_NAME = "send_monthly_statements"


@dataclass
class Statement:
    """One account's statement for one month"""
    account_id: str
    display_name: str
    email: str
    year: int
    month: int
    period_start: datetime
    period_end: datetime
    balance: Decimal                 # Current balance, not end-of-period
    transactions: List[Transaction]  # Newest first
    summary: TransactionSummary

    @property
    def period_label(self) -> str:
        return f"{self.month:02d}/{self.year}"


@dataclass
class StatementBatch:
    """Statements produced by one generation run"""
    job_id: str
    year: int
    month: int
    statements: List[Statement] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.statements)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'year': self.year,
            'month': self.month,
            'processed': self.processed,
            'account_ids': [s.account_id for s in self.statements],
            'errors': list(self.errors)
        }


class StatementGenerator:
    """Produces monthly statement data for one or all accounts"""

    def __init__(
        self,
        account_manager: AccountManager,
        ledger: Ledger,
        audit_trail: AuditTrail,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.account_manager = account_manager
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("bankcore.statements")

    def generate(
        self,
        triggered_by: Caller,
        year: Optional[int] = None,
        month: Optional[int] = None,
        account_identifier: Optional[str] = None
    ) -> StatementBatch:
        """
        Generate statements for a month

        Args:
            triggered_by: Administrator starting the run
            year: Statement year (defaults to the current one)
            month: Statement month 1-12 (defaults to the current one)
            account_identifier: Only this account, matched by id, email or
                owner identity

        Returns:
            StatementBatch with statements and per-account errors
        """
        if not triggered_by.is_administrator:
            raise PermissionDeniedError("Only administrators can generate statements")

        now = self.clock()
        year = now.year if year is None else year
        month = now.month if month is None else month
        start, end = month_bounds(year, month)

        if account_identifier:
            accounts = self.account_manager.find_by_identifier(account_identifier)
            if not accounts:
                raise NotFoundError(f"Customer not found: {account_identifier}")
        else:
            accounts = self.account_manager.list_accounts()

        batch = StatementBatch(
            job_id=f"statements_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}",
            year=year,
            month=month
        )
        self.logger.info(
            f"Generating statements for {month:02d}/{year}"
            f"{f' for {account_identifier}' if account_identifier else ' for all accounts'}"
        )

        for account in accounts:
            try:
                batch.statements.append(self._build_statement(account, year, month, start, end))
            except Exception as e:
                self.logger.error(f"Error processing statement for {account.id}: {e}")
                batch.errors.append({'account_id': account.id, 'error': str(e)})

        self.audit_trail.record_job(JOB_NAME, batch.job_id, triggered_by, batch.to_dict())
        return batch

    def _build_statement(self, account: Account, year: int, month: int,
                         start: datetime, end: datetime) -> Statement:
        transactions = self.ledger.get_transactions(account.id, start, end)
        return Statement(
            account_id=account.id,
            display_name=account.display_name or "Account Holder",
            email=account.email,
            year=year,
            month=month,
            period_start=start,
            period_end=end,
            balance=self.ledger.get_balance(account.id),
            transactions=transactions,
            summary=Ledger.summarize(transactions)
        )
