"""
System Configuration Record

Singleton document holding the business settings administrators change at
runtime: the monthly interest rate, whether self-registration is open, and
the explicit house account reference. Environment configuration only seeds
the defaults used until an administrator saves the record.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .accounts import Caller
from .audit import AuditTrail, AuditEventType
from .errors import PermissionDeniedError, ValidationError
from .money import to_decimal
from .storage import StorageInterface, StorageRecord, parse_datetime
from .logging_config import get_logger


CONFIG_ID = "config"


@dataclass
class SystemConfig(StorageRecord):
    """Runtime business settings"""
    interest_rate_percent: Decimal = Decimal('0')
    allow_new_registrations: bool = True
    house_account_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SystemConfig':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['interest_rate_percent'] = Decimal(data.get('interest_rate_percent', '0'))
        return cls(**data)


class SystemConfigStore:
    """Reads and (admin-only) updates the SystemConfig singleton"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        defaults: Optional[Dict[str, Any]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.defaults = defaults or {}
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.table_name = "system"
        self.logger = get_logger("bankcore.system_config")

    def get(self) -> SystemConfig:
        """Current settings (defaults if never saved)"""
        data = self.storage.load(self.table_name, CONFIG_ID)
        if data:
            return SystemConfig.from_dict(data)

        now = self.clock()
        return SystemConfig(
            id=CONFIG_ID,
            created_at=now,
            updated_at=now,
            interest_rate_percent=to_decimal(self.defaults.get('interest_rate_percent', '0')),
            allow_new_registrations=self.defaults.get('allow_new_registrations', True),
            house_account_id=self.defaults.get('house_account_id')
        )

    def registrations_open(self) -> bool:
        return self.get().allow_new_registrations

    def update(
        self,
        caller: Caller,
        interest_rate_percent=None,
        allow_new_registrations: Optional[bool] = None,
        house_account_id: Optional[str] = None
    ) -> SystemConfig:
        """
        Update settings (administrators only)

        Args:
            caller: Caller performing the change
            interest_rate_percent: Monthly interest rate in percent (>= 0)
            allow_new_registrations: Open or close self-registration
            house_account_id: Explicit house account reference ("" clears it)

        Returns:
            Saved SystemConfig
        """
        if not caller.is_administrator:
            raise PermissionDeniedError("Only administrators can change system configuration")

        current = self.get()
        before = current.to_dict()

        if interest_rate_percent is not None:
            rate = to_decimal(interest_rate_percent)
            if rate < 0:
                raise ValidationError("Interest rate cannot be negative")
            current.interest_rate_percent = rate
        if allow_new_registrations is not None:
            current.allow_new_registrations = bool(allow_new_registrations)
        if house_account_id is not None:
            current.house_account_id = house_account_id or None

        current.updated_at = self.clock()
        self.storage.save(self.table_name, CONFIG_ID, current.to_dict())
        self.logger.info(f"System configuration updated by {caller.identity}")

        after = current.to_dict()
        changes = {
            key: {'from': before.get(key), 'to': after[key]}
            for key in ('interest_rate_percent', 'allow_new_registrations', 'house_account_id')
            if before.get(key) != after[key]
        }
        self.audit_trail.record(AuditEventType.CONFIG_UPDATED, caller, {'changes': changes})
        return current
