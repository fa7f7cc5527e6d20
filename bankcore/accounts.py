"""
Account Management Module

Accounts represent one party's holdings. The balance itself lives in the
transaction log; an account only carries a cached copy maintained by the
ledger. Accounts are created by registration and never deleted.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import uuid

from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .logging_config import get_logger


@dataclass(frozen=True)
class Caller:
    """
    Identity of whoever invokes an operation, as supplied by the external
    auth collaborator
    """
    identity: str
    account_id: Optional[str] = None
    is_administrator: bool = False
    client_context: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


# Housekeeping and scheduled jobs act as this caller
SYSTEM_CALLER = Caller(identity="system", is_administrator=True)


@dataclass
class Account(StorageRecord):
    """
    Bank account; cache fields are owned by the ledger
    """
    owner_identity: str
    display_name: str
    email: str
    is_administrator: bool = False
    cached_balance: Optional[Decimal] = None
    cached_balance_updated_at: Optional[datetime] = None
    cached_transaction_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['cached_balance_updated_at'] = parse_datetime(data.get('cached_balance_updated_at'))
        if data.get('cached_balance') is not None:
            data['cached_balance'] = Decimal(data['cached_balance'])
        return cls(**data)

    def is_owned_by(self, caller: Caller) -> bool:
        """Check whether the caller is this account's owner"""
        return caller.account_id == self.id or caller.identity == self.owner_identity


class AccountManager:
    """
    Registers accounts and gives the rest of the system read access to them
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        registrations_open: Optional[Callable[[], bool]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.registrations_open = registrations_open or (lambda: True)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.table_name = "accounts"
        self.logger = get_logger("bankcore.accounts")

    def register_account(
        self,
        owner_identity: str,
        display_name: str,
        email: str,
        is_administrator: bool = False,
        account_id: Optional[str] = None,
        actor: Optional[Caller] = None
    ) -> Account:
        """
        Register a new account

        Args:
            owner_identity: Identity of the account owner
            display_name: Name shown on statements
            email: Contact email
            is_administrator: Flag the account as administrator (house)
            account_id: Explicit id (generated if omitted)
            actor: Caller performing the registration (None = self-registration)

        Returns:
            Created Account
        """
        if not owner_identity:
            raise ValidationError("owner_identity is required")

        actor_is_admin = actor is not None and actor.is_administrator
        if is_administrator and not actor_is_admin:
            raise PermissionDeniedError("Only administrators can create administrator accounts")
        if not actor_is_admin and not self.registrations_open():
            raise PermissionDeniedError("New registrations are currently disabled")

        now = self.clock()
        account = Account(
            id=account_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_identity=owner_identity,
            display_name=display_name or email or owner_identity,
            email=email,
            is_administrator=is_administrator
        )
        self.storage.insert(self.table_name, account.id, account.to_dict())
        self.logger.info(f"Registered account {account.id} for {owner_identity}")

        self.audit_trail.record(
            AuditEventType.ACCOUNT_REGISTERED,
            actor or Caller(identity=owner_identity),
            {'display_name': account.display_name, 'email': email, 'is_administrator': is_administrator},
            subject_account_id=account.id
        )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def require_account(self, account_id: str) -> Account:
        """Get account by ID or raise NotFoundError"""
        account = self.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def list_accounts(self) -> List[Account]:
        """All accounts in registration order"""
        return [Account.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def list_administrators(self) -> List[Account]:
        """Accounts flagged as administrator"""
        return [
            Account.from_dict(data)
            for data in self.storage.find(self.table_name, {'is_administrator': True})
        ]

    def find_by_identifier(self, identifier: str) -> List[Account]:
        """Match an account by id, email or owner identity"""
        account = self.get_account(identifier)
        if account:
            return [account]
        return [
            account for account in self.list_accounts()
            if identifier in (account.email, account.owner_identity)
        ]

    def update_balance_cache(self, account_id: str, balance: Decimal,
                             transaction_count: int, updated_at: datetime) -> None:
        """Write the ledger-owned cache fields, leaving everything else intact"""
        data = self.storage.load(self.table_name, account_id)
        if data is None:
            raise NotFoundError(f"Account {account_id} not found")
        data['cached_balance'] = str(balance)
        data['cached_balance_updated_at'] = updated_at.isoformat()
        data['cached_transaction_count'] = transaction_count
        data['updated_at'] = updated_at.isoformat()
        self.storage.save(self.table_name, account_id, data)
