"""
Banking Service Facade

Entry points for the thin RPC/CLI layer. Each method receives the Caller
supplied by the external auth collaborator; administrator-only operations
are refused before any state is read, and every refusal is audited.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .accounts import Account, AccountManager, Caller, SYSTEM_CALLER
from .audit import AuditTrail, AuditEventType, AuditLogEntry, JobLog
from .config import BankcoreConfig, get_config
from .errors import PermissionDeniedError
from .house import HouseAccountResolver, MirrorReport
from .interest import InterestAccrualJob, JobResult
from .ledger import Ledger, Transaction
from .money import AmountLike
from .notifications import NotificationSender, create_notifier
from .statements import StatementBatch, StatementGenerator
from .storage import StorageInterface, create_storage, parse_datetime
from .system_config import SystemConfig, SystemConfigStore
from .withdrawals import WithdrawalStatus, WithdrawalTask, WithdrawalWorkflow
from .logging_config import get_logger, setup_logging


__all__ = ["BankingService", "Caller", "SYSTEM_CALLER", "build_service"]

AUDIT_FILTER_KEYS = ("event_type", "actor_id", "start_date", "end_date", "subject_account_id")


class BankingService:
    """Ledger engine with all components wired together"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        system_config: SystemConfigStore,
        account_manager: AccountManager,
        ledger: Ledger,
        house_resolver: HouseAccountResolver,
        withdrawals: WithdrawalWorkflow,
        interest_job: InterestAccrualJob,
        statements: StatementGenerator,
        audit_query_limit: int = 100
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.system_config = system_config
        self.account_manager = account_manager
        self.ledger = ledger
        self.house_resolver = house_resolver
        self.withdrawals = withdrawals
        self.interest_job = interest_job
        self.statements = statements
        self.audit_query_limit = audit_query_limit
        self.logger = get_logger("bankcore.service")

    # Access checks

    def _deny(self, caller: Caller, action: str, subject_account_id: Optional[str] = None):
        self.logger.warning(f"Permission denied: {caller.identity} attempted {action}")
        self.audit_trail.record(
            AuditEventType.PERMISSION_DENIED,
            caller,
            {'action': action},
            subject_account_id=subject_account_id
        )
        return PermissionDeniedError(f"{caller.identity} is not allowed to {action}")

    def _require_admin(self, caller: Caller, action: str) -> None:
        if not caller.is_administrator:
            raise self._deny(caller, action)

    def _require_owner_or_admin(self, caller: Caller, account_id: str, action: str) -> None:
        if caller.is_administrator or caller.account_id == account_id:
            return
        account = self.account_manager.get_account(account_id)
        if account is None or not account.is_owned_by(caller):
            raise self._deny(caller, action, account_id)

    # Jobs

    def trigger_interest_accrual(self, caller: Caller) -> JobResult:
        """Run the monthly interest job (administrators only)"""
        self._require_admin(caller, "trigger interest accrual")
        return self.interest_job.run(caller)

    def trigger_statement_generation(
        self,
        caller: Caller,
        year: Optional[int] = None,
        month: Optional[int] = None,
        account_identifier: Optional[str] = None
    ) -> StatementBatch:
        """Generate monthly statements (administrators only)"""
        self._require_admin(caller, "trigger statement generation")
        return self.statements.generate(caller, year, month, account_identifier)

    # Withdrawal requests

    def create_withdrawal_request(self, caller: Caller, account_id: str,
                                  amount: AmountLike, description: str = "") -> WithdrawalTask:
        try:
            return self.withdrawals.create_request(caller, account_id, amount, description)
        except PermissionDeniedError:
            self._deny(caller, "create withdrawal request", account_id)
            raise

    def approve_withdrawal(self, caller: Caller, task_id: str) -> WithdrawalTask:
        self._require_admin(caller, "approve withdrawal request")
        return self.withdrawals.approve(task_id, caller)

    def reject_withdrawal(self, caller: Caller, task_id: str, reason: str = "") -> WithdrawalTask:
        self._require_admin(caller, "reject withdrawal request")
        return self.withdrawals.reject(task_id, caller, reason)

    def cancel_withdrawal(self, caller: Caller, task_id: str) -> WithdrawalTask:
        try:
            return self.withdrawals.cancel(task_id, caller)
        except PermissionDeniedError:
            self._deny(caller, "cancel withdrawal request")
            raise

    def archive_withdrawals(self, caller: Caller, older_than_days: Optional[int] = None) -> int:
        """Archive decided requests past retention (administrators only)"""
        self._require_admin(caller, "archive withdrawal requests")
        return self.withdrawals.archive_completed(older_than_days, caller)

    def list_withdrawals(self, caller: Caller, account_id: Optional[str] = None,
                         status: Optional[WithdrawalStatus] = None,
                         include_archived: bool = False) -> List[WithdrawalTask]:
        """Administrators see every request; owners only their own account's"""
        if account_id is None:
            self._require_admin(caller, "list all withdrawal requests")
        else:
            self._require_owner_or_admin(caller, account_id, "list withdrawal requests")
        return self.withdrawals.list_tasks(account_id, status, include_archived)

    # Balances and accounts

    def get_balance(self, caller: Caller, account_id: str):
        self._require_owner_or_admin(caller, account_id, "view balance")
        return self.ledger.get_balance(account_id)

    def get_transactions(self, caller: Caller, account_id: str,
                         start: Optional[datetime] = None,
                         end: Optional[datetime] = None) -> List[Transaction]:
        self._require_owner_or_admin(caller, account_id, "view transactions")
        return self.ledger.get_transactions(account_id, start, end)

    def register_account(self, owner_identity: str, display_name: str, email: str,
                         is_administrator: bool = False,
                         caller: Optional[Caller] = None) -> Account:
        try:
            return self.account_manager.register_account(
                owner_identity, display_name, email, is_administrator, actor=caller
            )
        except PermissionDeniedError:
            self._deny(caller or Caller(identity=owner_identity), "register account")
            raise

    # House account maintenance

    def diagnose_house_deposits(self, caller: Caller) -> MirrorReport:
        self._require_admin(caller, "diagnose house deposits")
        return self.house_resolver.diagnose_mirrors()

    def repair_house_deposits(self, caller: Caller) -> List[Transaction]:
        self._require_admin(caller, "repair house deposits")
        return self.house_resolver.repair_missing_mirrors(caller)

    # Audit and configuration

    def query_audit_log(self, caller: Caller, filters: Optional[Dict[str, Any]] = None,
                        limit: Optional[int] = None) -> List[AuditLogEntry]:
        """
        Query audit entries newest first (administrators only)

        Args:
            caller: Administrator running the query
            filters: Any of event_type, actor_id, start_date, end_date,
                subject_account_id; dates may be datetimes or ISO strings
            limit: Maximum entries (configured default when omitted)
        """
        self._require_admin(caller, "query audit log")
        filters = {k: v for k, v in (filters or {}).items() if k in AUDIT_FILTER_KEYS}
        for key in ("start_date", "end_date"):
            if key in filters:
                filters[key] = parse_datetime(filters[key])
        return self.audit_trail.query(
            limit=limit if limit is not None else self.audit_query_limit,
            **filters
        )

    def verify_audit_integrity(self, caller: Caller) -> Dict[str, Any]:
        self._require_admin(caller, "verify audit integrity")
        return self.audit_trail.verify_integrity()

    def get_job_logs(self, caller: Caller, job_name: Optional[str] = None,
                     limit: int = 50) -> List[JobLog]:
        self._require_admin(caller, "view job logs")
        return self.audit_trail.get_job_logs(job_name, limit)

    def get_system_config(self, caller: Caller) -> SystemConfig:
        self._require_admin(caller, "view system configuration")
        return self.system_config.get()

    def update_system_config(self, caller: Caller, interest_rate_percent=None,
                             allow_new_registrations: Optional[bool] = None,
                             house_account_id: Optional[str] = None) -> SystemConfig:
        self._require_admin(caller, "update system configuration")
        return self.system_config.update(
            caller, interest_rate_percent, allow_new_registrations, house_account_id
        )


def build_service(
    config: Optional[BankcoreConfig] = None,
    storage: Optional[StorageInterface] = None,
    notifier: Optional[NotificationSender] = None,
    clock: Optional[Callable[[], datetime]] = None,
    configure_logging: bool = True
) -> BankingService:
    """
    Wire every component from configuration

    Args:
        config: Settings (environment configuration when omitted)
        storage: Storage backend (created from config when omitted)
        notifier: Notification sender (created from config when omitted)
        clock: Time source shared by all components (UTC now by default)
        configure_logging: Install the configured log handler

    Returns:
        Ready BankingService
    """
    config = config or get_config()
    if configure_logging:
        setup_logging(config.log_level, fmt=config.log_format)

    storage = storage or create_storage(config)
    notifier = notifier or create_notifier(config)

    audit_trail = AuditTrail(storage, enabled=config.enable_audit_logging, clock=clock)
    system_config = SystemConfigStore(
        storage,
        audit_trail,
        defaults={
            'interest_rate_percent': config.default_interest_rate_percent,
            'allow_new_registrations': config.allow_new_registrations,
            'house_account_id': config.house_account_id
        },
        clock=clock
    )
    account_manager = AccountManager(
        storage, audit_trail, registrations_open=system_config.registrations_open, clock=clock
    )
    ledger = Ledger(
        storage, account_manager,
        cache_ttl=timedelta(hours=config.balance_cache_ttl_hours),
        clock=clock
    )
    house_resolver = HouseAccountResolver(
        account_manager, ledger, audit_trail,
        house_account_id=lambda: system_config.get().house_account_id
    )
    withdrawals = WithdrawalWorkflow(
        storage, account_manager, ledger, house_resolver, audit_trail,
        notifier=notifier,
        retention=timedelta(days=config.withdrawal_retention_days),
        clock=clock
    )
    interest_job = InterestAccrualJob(
        storage, account_manager, ledger, audit_trail, system_config, clock=clock
    )
    statements = StatementGenerator(account_manager, ledger, audit_trail, clock=clock)

    return BankingService(
        storage=storage,
        audit_trail=audit_trail,
        system_config=system_config,
        account_manager=account_manager,
        ledger=ledger,
        house_resolver=house_resolver,
        withdrawals=withdrawals,
        interest_job=interest_job,
        statements=statements,
        audit_query_limit=config.audit_query_default_limit
    )
