"""
House / Mirror Account Resolver

Every approved customer withdrawal is mirrored as a deposit on the single
house account. The house account is taken from an explicit configuration
reference when one is set; otherwise exactly one administrator account must
exist. Zero or several candidates is a configuration error, never an
arbitrary pick.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .accounts import Account, AccountManager, Caller
from .audit import AuditTrail, AuditEventType
from .errors import ConfigurationError, PermissionDeniedError
from .ledger import Ledger, Transaction, TransactionType
from .logging_config import get_logger


MIRROR_CREATED_BY = "withdrawal_deposit_service"


@dataclass
class MirrorReport:
    """Result of checking withdrawals against house deposits"""
    house_account_id: str
    withdrawals_checked: int = 0
    mirrors_checked: int = 0
    missing: List[Transaction] = field(default_factory=list)    # Approved withdrawals without a mirror
    orphaned: List[Transaction] = field(default_factory=list)   # Mirrors whose withdrawal is gone
    duplicated: Dict[str, List[str]] = field(default_factory=dict)  # Withdrawal id -> mirror ids

    @property
    def is_consistent(self) -> bool:
        return not (self.missing or self.orphaned or self.duplicated)


class HouseAccountResolver:
    """Locates the house account and manages mirror deposits on it"""

    def __init__(
        self,
        account_manager: AccountManager,
        ledger: Ledger,
        audit_trail: AuditTrail,
        house_account_id: Optional[Callable[[], Optional[str]]] = None
    ):
        self.account_manager = account_manager
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.house_account_id = house_account_id or (lambda: None)
        self.logger = get_logger("bankcore.house")

    def resolve_house_account(self) -> Account:
        """
        The canonical counterparty for mirrored deposits

        Raises:
            ConfigurationError: configured account missing or not an
                administrator, or no explicit reference and not exactly one
                administrator account
        """
        configured_id = self.house_account_id()
        if configured_id:
            account = self.account_manager.get_account(configured_id)
            if account is None:
                raise ConfigurationError(f"Configured house account {configured_id} does not exist")
            if not account.is_administrator:
                raise ConfigurationError(
                    f"Configured house account {configured_id} is not an administrator account"
                )
            return account

        administrators = self.account_manager.list_administrators()
        if not administrators:
            raise ConfigurationError("No administrator account found for house deposits")
        if len(administrators) > 1:
            ids = ", ".join(sorted(a.id for a in administrators))
            raise ConfigurationError(
                f"Ambiguous house account: {len(administrators)} administrator accounts ({ids}); "
                "set house_account_id in system configuration"
            )
        return administrators[0]

    def find_mirrors(self, withdrawal_id: str) -> List[Transaction]:
        return self.ledger.find_transactions({
            'linked_transaction_id': withdrawal_id,
            'transaction_type': TransactionType.DEPOSIT.value
        })

    def find_mirror(self, withdrawal_id: str) -> Optional[Transaction]:
        """The deposit mirroring a withdrawal, if one exists"""
        mirrors = self.find_mirrors(withdrawal_id)
        if len(mirrors) > 1:
            self.logger.error(f"Withdrawal {withdrawal_id} has {len(mirrors)} mirror deposits")
        return mirrors[0] if mirrors else None

    def has_mirror(self, withdrawal_id: str) -> bool:
        return self.find_mirror(withdrawal_id) is not None

    def ensure_mirror(
        self,
        withdrawal: Transaction,
        customer: Account,
        created_by: str,
        house: Optional[Account] = None
    ) -> Tuple[Transaction, bool]:
        """
        Create the mirror deposit for a withdrawal unless it already exists

        Meant to run inside the caller's atomic unit so the check and the
        write cannot interleave with another approval. A withdrawal that
        already names its mirror gets the mirror under exactly that id.

        Returns:
            (mirror transaction, True if it was created now)
        """
        existing = self.find_mirror(withdrawal.id)
        if existing is not None:
            return existing, False

        house = house or self.resolve_house_account()
        customer_name = customer.display_name or customer.email or "Unknown Customer"
        reason = withdrawal.description or "No description"

        mirror = self.ledger.append_transaction(
            house.id,
            TransactionType.DEPOSIT,
            withdrawal.amount,
            f"House deposit from customer withdrawal ({customer_name}, {reason})",
            created_by,
            linked_transaction_id=withdrawal.id,
            customer_account_id=customer.id,
            timestamp=withdrawal.timestamp,
            transaction_id=withdrawal.linked_transaction_id
        )
        return mirror, True

    def diagnose_mirrors(self) -> MirrorReport:
        """Compare approved-task withdrawals with the deposits mirroring them"""
        house = self.resolve_house_account()
        report = MirrorReport(house_account_id=house.id)

        withdrawals = [
            t for t in self.ledger.find_transactions({'transaction_type': TransactionType.WITHDRAWAL.value})
            if t.task_id
        ]
        withdrawal_ids = {t.id for t in withdrawals}
        mirrors = [
            t for t in self.ledger.find_transactions({'transaction_type': TransactionType.DEPOSIT.value})
            if t.linked_transaction_id
        ]
        report.withdrawals_checked = len(withdrawals)
        report.mirrors_checked = len(mirrors)

        by_withdrawal: Dict[str, List[str]] = {}
        for mirror in mirrors:
            by_withdrawal.setdefault(mirror.linked_transaction_id, []).append(mirror.id)
            if mirror.linked_transaction_id not in withdrawal_ids and \
                    self.ledger.get_transaction(mirror.linked_transaction_id) is None:
                report.orphaned.append(mirror)

        report.missing = [t for t in withdrawals if t.id not in by_withdrawal]
        report.duplicated = {wid: ids for wid, ids in by_withdrawal.items() if len(ids) > 1}
        return report

    def repair_missing_mirrors(self, actor: Caller) -> List[Transaction]:
        """
        Create mirror deposits for approved withdrawals that lack one

        Args:
            actor: Administrator running the repair

        Returns:
            Mirror transactions created
        """
        if not actor.is_administrator:
            raise PermissionDeniedError("Only administrators can repair house deposits")

        report = self.diagnose_mirrors()
        house = self.account_manager.require_account(report.house_account_id)
        created = []

        for withdrawal in report.missing:
            customer = self.account_manager.require_account(withdrawal.account_id)
            with self.ledger.storage.atomic():
                mirror, was_created = self.ensure_mirror(withdrawal, customer, MIRROR_CREATED_BY, house)
            if not was_created:
                continue
            created.append(mirror)
            self.audit_trail.record(
                AuditEventType.HOUSE_DEPOSIT_CREATED,
                actor,
                {
                    'transaction_id': mirror.id,
                    'linked_withdrawal_id': withdrawal.id,
                    'amount': mirror.amount,
                    'customer_account_id': customer.id,
                    'repair': True
                },
                subject_account_id=house.id
            )

        if created:
            self.logger.info(f"Repaired {len(created)} missing house deposits")
        return created
