"""
Interest Accrual Job

Pays one month of interest on every account with a positive balance. The job
is safe to re-run: each posting inserts an idempotency record keyed by
account and calendar month in the same atomic unit as the interest
transaction, so a second run (or a concurrent one) can never pay twice.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import uuid

from .accounts import Account, AccountManager, Caller
from .audit import AuditTrail, AuditEventType
from .errors import (
    ConfigurationError, DuplicateRecordError, PerAccountProcessingError, PermissionDeniedError
)
from .ledger import Ledger, TransactionType
from .money import CENT, ZERO, round_money
from .storage import StorageInterface, to_json_value
from .system_config import SystemConfigStore
from .logging_config import get_logger, log_action


JOB_NAME = "calculate_interest"


@dataclass
class JobResult:
    """Summary of one interest run"""
    job_id: str
    triggered_by: str
    interest_rate_percent: Decimal
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed: int = 0
    total_paid: Decimal = ZERO
    already_paid: int = 0
    skipped_zero_balance: int = 0
    skipped_too_small: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'triggered_by': self.triggered_by,
            'interest_rate_percent': to_json_value(self.interest_rate_percent),
            'started_at': to_json_value(self.started_at),
            'finished_at': to_json_value(self.finished_at),
            'processed': self.processed,
            'total_paid': to_json_value(self.total_paid),
            'already_paid': self.already_paid,
            'skipped_zero_balance': self.skipped_zero_balance,
            'skipped_too_small': self.skipped_too_small,
            'errors': list(self.errors)
        }


def posting_key(account_id: str, year: int, month: int) -> str:
    """Idempotency key for one account's interest in one calendar month"""
    return f"{account_id}:{year:04d}-{month:02d}"


class InterestAccrualJob:
    """
    Monthly interest batch job
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        ledger: Ledger,
        audit_trail: AuditTrail,
        system_config: SystemConfigStore,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.system_config = system_config
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.postings_table = "interest_postings"
        self.logger = get_logger("bankcore.interest")

    def run(self, triggered_by: Caller) -> JobResult:
        """
        Pay interest for the current calendar month

        Args:
            triggered_by: Administrator starting the job

        Returns:
            JobResult with per-outcome counts; per-account failures are
            collected in ``errors`` and never raised

        Raises:
            PermissionDeniedError: caller is not an administrator
            ConfigurationError: interest rate is not positive
        """
        if not triggered_by.is_administrator:
            raise PermissionDeniedError("Only administrators can run the interest job")

        rate = self.system_config.get().interest_rate_percent
        if rate <= 0:
            raise ConfigurationError(f"Interest rate must be positive, got {rate}%")

        now = self.clock()
        result = JobResult(
            job_id=f"interest_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}",
            triggered_by=triggered_by.identity,
            interest_rate_percent=rate,
            started_at=now
        )
        log_action(self.logger, "info", f"Starting interest job at {rate}%",
                   user_id=triggered_by.identity, action="run_interest_job", resource=result.job_id)

        for account in self.account_manager.list_accounts():
            try:
                self._process_account(account, rate, now, result, triggered_by)
            except Exception as e:
                error = PerAccountProcessingError(account.id, e)
                self.logger.error(f"Interest processing failed: {error}")
                result.errors.append({'account_id': account.id, 'error': str(e)})

        result.finished_at = self.clock()
        self.logger.info(
            f"Interest job {result.job_id} finished: {result.processed} paid "
            f"({result.total_paid}), {result.already_paid} already paid, "
            f"{len(result.errors)} errors"
        )
        self.audit_trail.record_job(JOB_NAME, result.job_id, triggered_by, result.to_dict())
        return result

    def _process_account(self, account: Account, rate: Decimal, now: datetime,
                         result: JobResult, triggered_by: Caller) -> None:
        if self.ledger.has_transaction_in_month(account.id, TransactionType.INTEREST, now.year, now.month):
            result.already_paid += 1
            return

        balance = self.ledger.recompute_balance(account.id)
        if balance <= 0:
            result.skipped_zero_balance += 1
            return

        interest = round_money(balance * rate / Decimal('100'))
        if interest < CENT:
            result.skipped_too_small += 1
            return

        key = posting_key(account.id, now.year, now.month)
        try:
            with self.storage.atomic():
                transaction = self.ledger.append_transaction(
                    account.id,
                    TransactionType.INTEREST,
                    interest,
                    f"Monthly Interest Payment - {rate}% on ${balance}",
                    triggered_by.identity,
                    job_id=result.job_id
                )
                self.storage.insert(self.postings_table, key, {
                    'id': key,
                    'account_id': account.id,
                    'year_month': f"{now.year:04d}-{now.month:02d}",
                    'transaction_id': transaction.id,
                    'job_id': result.job_id
                })
        except DuplicateRecordError:
            # Another run posted this month first; its unit won
            self.logger.info(f"Interest for {key} already posted by another run")
            result.already_paid += 1
            return

        result.processed += 1
        result.total_paid += interest

        self.audit_trail.record(
            AuditEventType.INTEREST_PAID,
            triggered_by,
            {
                'transaction_id': transaction.id,
                'job_id': result.job_id,
                'amount': interest,
                'interest_rate_percent': rate,
                'balance_before': balance,
                'balance_after': balance + interest
            },
            subject_account_id=account.id
        )
