"""
Withdrawal Request Workflow

Withdrawal requests are tasks that flow:

    pending -> approved | rejected | cancelled -> archived

Owners create and cancel requests; administrators approve or reject them.
No balance check happens at request time, approval is the control point.
Approval books the withdrawal on the customer account and its mirror deposit
on the house account in a single atomic unit, and is safe to retry: an
existing withdrawal for the task or mirror for the withdrawal is reused
rather than created twice.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import uuid

from .accounts import AccountManager, Caller, SYSTEM_CALLER
from .audit import AuditTrail, AuditEventType
from .errors import (
    InvalidStateTransition, NotFoundError, PermissionDeniedError, ValidationError
)
from .house import HouseAccountResolver, MIRROR_CREATED_BY
from .ledger import Ledger, Transaction, TransactionType
from .money import AmountLike, validate_amount
from .notifications import (
    NotificationSender, withdrawal_approved_notification, withdrawal_rejected_notification
)
from .storage import StorageInterface, StorageRecord, parse_datetime
from .logging_config import get_logger, log_action


class WithdrawalStatus(Enum):
    """Status of a withdrawal task"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


# States a pending task can be decided into; only these can be archived
DECIDED_STATUSES = frozenset({
    WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED, WithdrawalStatus.CANCELLED
})


def parse_status(value) -> WithdrawalStatus:
    """Validate a task status at the storage/API boundary"""
    if isinstance(value, WithdrawalStatus):
        return value
    try:
        return WithdrawalStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown withdrawal status: {value!r}")


@dataclass
class WithdrawalTask(StorageRecord):
    """Request to move money out of an account"""
    account_id: str
    requested_amount: Decimal
    description: str
    created_by: str
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    linked_transaction_id: Optional[str] = None   # Withdrawal booked on approval
    mirror_transaction_id: Optional[str] = None   # House deposit booked on approval
    rejection_reason: Optional[str] = None
    archived_at: Optional[datetime] = None
    status_before_archive: Optional[WithdrawalStatus] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WithdrawalTask':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'decided_at', 'archived_at'):
            data[key] = parse_datetime(data.get(key))
        data['requested_amount'] = Decimal(data['requested_amount'])
        data['status'] = parse_status(data['status'])
        if data.get('status_before_archive'):
            data['status_before_archive'] = parse_status(data['status_before_archive'])
        return cls(**data)


class WithdrawalWorkflow:
    """State machine over withdrawal tasks"""

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        ledger: Ledger,
        house_resolver: HouseAccountResolver,
        audit_trail: AuditTrail,
        notifier: Optional[NotificationSender] = None,
        retention: timedelta = timedelta(days=30),
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.ledger = ledger
        self.house_resolver = house_resolver
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.retention = retention
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.table_name = "withdrawal_tasks"
        self.logger = get_logger("bankcore.withdrawals")

    # Queries

    def get_task(self, task_id: str) -> Optional[WithdrawalTask]:
        data = self.storage.load(self.table_name, task_id)
        if data:
            return WithdrawalTask.from_dict(data)
        return None

    def _require_task(self, task_id: str) -> WithdrawalTask:
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Withdrawal request {task_id} not found")
        return task

    def list_tasks(
        self,
        account_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
        include_archived: bool = False
    ) -> List[WithdrawalTask]:
        """
        Tasks newest first

        Archived tasks are excluded from active views unless asked for,
        either explicitly by status or with include_archived.
        """
        filters: Dict[str, Any] = {}
        if account_id is not None:
            filters['account_id'] = account_id
        if status is not None:
            filters['status'] = parse_status(status).value

        tasks = [WithdrawalTask.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        if status is None and not include_archived:
            tasks = [t for t in tasks if t.status != WithdrawalStatus.ARCHIVED]
        return sorted(tasks, key=lambda t: t.created_at, reverse=True)

    # Transitions

    def _save_task(self, task: WithdrawalTask) -> None:
        task.updated_at = self.clock()
        self.storage.save(self.table_name, task.id, task.to_dict())

    @staticmethod
    def _require_pending(task: WithdrawalTask, attempted: str) -> None:
        if task.status != WithdrawalStatus.PENDING:
            raise InvalidStateTransition(task.id, task.status.value, attempted)

    def create_request(
        self,
        requester: Caller,
        account_id: str,
        amount: AmountLike,
        description: str = ""
    ) -> WithdrawalTask:
        """
        Create a pending withdrawal request

        Args:
            requester: Account owner (or an administrator acting for them)
            account_id: Account to withdraw from
            amount: Requested amount, positive with at most 2 decimal places
            description: Reason shown to the approver

        Returns:
            Created WithdrawalTask in pending state
        """
        amount = validate_amount(amount)
        account = self.account_manager.require_account(account_id)
        if not (requester.is_administrator or account.is_owned_by(requester)):
            raise PermissionDeniedError("Only the account owner can request a withdrawal")

        now = self.clock()
        task = WithdrawalTask(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            requested_amount=amount,
            description=description or "",
            created_by=requester.identity
        )
        self.storage.insert(self.table_name, task.id, task.to_dict())
        log_action(self.logger, "info", f"Withdrawal request created for {amount}",
                   user_id=requester.identity, action="create_request", resource=task.id)

        self.audit_trail.record(
            AuditEventType.WITHDRAWAL_REQUEST_CREATED,
            requester,
            {'task_id': task.id, 'amount': amount, 'description': task.description, 'status': task.status},
            subject_account_id=account_id
        )
        return task

    def cancel(self, task_id: str, requester: Caller) -> WithdrawalTask:
        """Cancel a pending request (account owner only)"""
        with self.storage.atomic():
            task = self._require_task(task_id)
            account = self.account_manager.require_account(task.account_id)
            if not account.is_owned_by(requester):
                raise PermissionDeniedError("Only the account owner can cancel a withdrawal request")
            self._require_pending(task, "cancel")

            task.status = WithdrawalStatus.CANCELLED
            task.decided_at = self.clock()
            task.decided_by = requester.identity
            self._save_task(task)

        self.logger.info(f"Withdrawal request cancelled: {task.id}")
        self.audit_trail.record(
            AuditEventType.WITHDRAWAL_REQUEST_CANCELLED,
            requester,
            {'task_id': task.id, 'amount': task.requested_amount, 'cancelled_by': 'customer'},
            subject_account_id=task.account_id
        )
        return task

    def _existing_withdrawal(self, task_id: str) -> Optional[Transaction]:
        """Withdrawal left behind by an earlier attempt to approve this task"""
        found = self.ledger.find_transactions({
            'task_id': task_id,
            'transaction_type': TransactionType.WITHDRAWAL.value
        })
        return found[0] if found else None

    def approve(self, task_id: str, admin: Caller) -> WithdrawalTask:
        """
        Approve a pending request (administrators only)

        Books the withdrawal on the requester's account and the mirror deposit
        on the house account, then marks the task approved, all in one atomic
        unit. Notification and audit follow, best effort.

        Returns:
            The approved task with linked_transaction_id and
            mirror_transaction_id set
        """
        if not admin.is_administrator:
            raise PermissionDeniedError("Only administrators can approve withdrawal requests")

        with self.storage.atomic():
            task = self._require_task(task_id)
            self._require_pending(task, "approve")
            customer = self.account_manager.require_account(task.account_id)
            house = self.house_resolver.resolve_house_account()
            if house.id == customer.id:
                raise ValidationError("Withdrawals from the house account cannot be mirrored into itself")

            withdrawal = self._existing_withdrawal(task.id)
            if withdrawal is None:
                withdrawal = self.ledger.append_transaction(
                    customer.id,
                    TransactionType.WITHDRAWAL,
                    task.requested_amount,
                    task.description or "Approved withdrawal request",
                    admin.identity,
                    linked_transaction_id=str(uuid.uuid4()),  # Id the mirror will take
                    task_id=task.id
                )
            else:
                # Withdrawals are immutable; one booked without a mirror id keeps a one-way
                # link, and the task records both ids
                self.logger.warning(f"Reusing withdrawal {withdrawal.id} from an earlier approval of {task.id}")

            mirror, mirror_created = self.house_resolver.ensure_mirror(
                withdrawal, customer, MIRROR_CREATED_BY, house
            )

            task.status = WithdrawalStatus.APPROVED
            task.decided_at = self.clock()
            task.decided_by = admin.identity
            task.linked_transaction_id = withdrawal.id
            task.mirror_transaction_id = mirror.id
            self._save_task(task)

        log_action(self.logger, "info", f"Withdrawal request approved, transaction {withdrawal.id}",
                   user_id=admin.identity, action="approve", resource=task.id)

        self._notify(withdrawal_approved_notification, task, customer)
        if mirror_created:
            self.audit_trail.record(
                AuditEventType.HOUSE_DEPOSIT_CREATED,
                admin,
                {
                    'transaction_id': mirror.id,
                    'linked_withdrawal_id': withdrawal.id,
                    'amount': mirror.amount,
                    'customer_account_id': customer.id
                },
                subject_account_id=house.id
            )
        self.audit_trail.record(
            AuditEventType.WITHDRAWAL_REQUEST_APPROVED,
            admin,
            {
                'task_id': task.id,
                'transaction_id': withdrawal.id,
                'mirror_transaction_id': mirror.id,
                'amount': task.requested_amount,
                'customer_email': customer.email,
                'house_account_id': house.id
            },
            subject_account_id=customer.id
        )
        return task

    def reject(self, task_id: str, admin: Caller, reason: str = "") -> WithdrawalTask:
        """Reject a pending request (administrators only); books nothing"""
        if not admin.is_administrator:
            raise PermissionDeniedError("Only administrators can reject withdrawal requests")

        with self.storage.atomic():
            task = self._require_task(task_id)
            self._require_pending(task, "reject")

            task.status = WithdrawalStatus.REJECTED
            task.decided_at = self.clock()
            task.decided_by = admin.identity
            task.rejection_reason = reason or ""
            self._save_task(task)

        self.logger.info(f"Withdrawal request rejected: {task.id}")

        customer = self.account_manager.get_account(task.account_id)
        if customer is not None:
            self._notify(withdrawal_rejected_notification, task, customer, reason)
        self.audit_trail.record(
            AuditEventType.WITHDRAWAL_REQUEST_REJECTED,
            admin,
            {'task_id': task.id, 'amount': task.requested_amount, 'rejection_reason': task.rejection_reason},
            subject_account_id=task.account_id
        )
        return task

    def _archive_cutoff(self, older_than: Optional[timedelta]) -> datetime:
        return self.clock() - (older_than if older_than is not None else self.retention)

    def archive(self, task_id: str, actor: Caller = SYSTEM_CALLER,
                older_than: Optional[timedelta] = None) -> WithdrawalTask:
        """
        Archive one decided task past the retention period

        Raises:
            InvalidStateTransition: task is pending or already archived
            ValidationError: retention period has not elapsed yet
        """
        with self.storage.atomic():
            task = self._require_task(task_id)
            if task.status not in DECIDED_STATUSES:
                raise InvalidStateTransition(task.id, task.status.value, "archive")
            decided_at = task.decided_at or task.updated_at
            if decided_at > self._archive_cutoff(older_than):
                raise ValidationError(f"Withdrawal request {task.id} is still inside its retention period")

            task.status_before_archive = task.status
            task.status = WithdrawalStatus.ARCHIVED
            task.archived_at = self.clock()
            self._save_task(task)

        self.audit_trail.record(
            AuditEventType.WITHDRAWAL_REQUEST_ARCHIVED,
            actor,
            {'task_id': task.id, 'status_before_archive': task.status_before_archive},
            subject_account_id=task.account_id
        )
        return task

    def archive_completed(self, older_than_days: Optional[int] = None,
                          actor: Caller = SYSTEM_CALLER) -> int:
        """
        Housekeeping sweep archiving every decided task past retention

        Returns:
            Number of tasks archived
        """
        older_than = timedelta(days=older_than_days) if older_than_days is not None else None
        cutoff = self._archive_cutoff(older_than)
        archived = 0

        for task in self.list_tasks():
            if task.status not in DECIDED_STATUSES:
                continue
            if (task.decided_at or task.updated_at) > cutoff:
                continue
            try:
                self.archive(task.id, actor, older_than)
                archived += 1
            except (InvalidStateTransition, ValidationError) as e:
                # Changed underneath us by a concurrent run
                self.logger.info(f"Skipped archiving {task.id}: {e}")

        self.logger.info(f"Archived {archived} completed withdrawal requests")
        return archived

    def _notify(self, build, task: WithdrawalTask, account, *args) -> None:
        """Best-effort notification; failures are logged only"""
        if self.notifier is None:
            return
        try:
            delivered = self.notifier.send(build(task, account, *args))
            if not delivered:
                self.logger.warning(f"Notification for {task.id} was not delivered")
        except Exception as e:
            self.logger.warning(f"Failed to send notification for {task.id}: {e}")
