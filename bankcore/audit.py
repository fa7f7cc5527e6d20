"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every state change in the system is logged here, best effort: a failed audit
write is logged locally and never reaches the caller of the operation it
describes. Job summaries are kept alongside in a job log.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import uuid

from .errors import AuditWriteError, ValidationError
from .storage import StorageInterface, StorageRecord, parse_datetime, to_json_value
from .logging_config import get_logger


class AuditEventType(Enum):
    """Types of audit events"""
    # Ledger events
    TRANSACTION_CREATED = "transaction_created"
    INTEREST_PAID = "interest_paid"
    HOUSE_DEPOSIT_CREATED = "house_deposit_created"
    JOB_EXECUTED = "job_executed"

    # Withdrawal request events
    WITHDRAWAL_REQUEST_CREATED = "withdrawal_request_created"
    WITHDRAWAL_REQUEST_APPROVED = "withdrawal_request_approved"
    WITHDRAWAL_REQUEST_REJECTED = "withdrawal_request_rejected"
    WITHDRAWAL_REQUEST_CANCELLED = "withdrawal_request_cancelled"
    WITHDRAWAL_REQUEST_ARCHIVED = "withdrawal_request_archived"

    # Administrative events
    CONFIG_UPDATED = "config_updated"
    ACCOUNT_REGISTERED = "account_registered"

    # Security events
    PERMISSION_DENIED = "permission_denied"


def parse_event_type(value) -> AuditEventType:
    """Validate an event type coming from storage or a query filter"""
    if isinstance(value, AuditEventType):
        return value
    try:
        return AuditEventType(value)
    except ValueError:
        raise ValidationError(f"Unknown audit event type: {value!r}")


@dataclass
class AuditLogEntry(StorageRecord):
    """
    Immutable audit entry with hash chaining for tamper detection
    """
    event_type: AuditEventType
    actor_identity: str
    actor_is_admin: bool
    sequence: int        # Position in the chain
    previous_hash: str   # Hash of previous entry for chaining
    current_hash: str    # SHA-256 hash of this entry
    details: Dict[str, Any] = field(default_factory=dict)
    subject_account_id: Optional[str] = None
    client_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Keep details and context JSON serializable
        self.details = to_json_value(self.details or {})
        self.client_context = to_json_value(self.client_context or {})

    @property
    def timestamp(self) -> datetime:
        return self.created_at

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'actor_identity': self.actor_identity,
            'actor_is_admin': self.actor_is_admin,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'subject_account_id': self.subject_account_id,
            'details': self.details,
            'client_context': self.client_context
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditLogEntry':
        """Create entry from dictionary with proper enum deserialization"""
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['event_type'] = parse_event_type(data['event_type'])
        return cls(**data)


@dataclass
class JobLog(StorageRecord):
    """Summary of one batch job execution"""
    job_name: str
    job_id: str
    triggered_by: str
    results: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.results = to_json_value(self.results or {})


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(
        self,
        storage: StorageInterface,
        table_name: str = "audit_logs",
        enabled: bool = True,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self.job_logs_table = "job_logs"
        self.enabled = enabled
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("bankcore.audit")

    def record(
        self,
        event_type: AuditEventType,
        actor=None,
        details: Optional[Dict[str, Any]] = None,
        subject_account_id: Optional[str] = None,
        client_context: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditLogEntry]:
        """
        Append an audit entry, never raising

        Args:
            event_type: Type of audit event
            actor: Caller who performed the action (None = system)
            details: Event-specific data
            subject_account_id: Account the action was about
            client_context: Client information supplied by the caller

        Returns:
            The persisted entry, or None if the write failed or auditing is off
        """
        if not self.enabled:
            return None

        try:
            return self._append(event_type, actor, details, subject_account_id, client_context)
        except Exception as e:
            self.logger.error(
                f"Failed to write audit event {getattr(event_type, 'value', event_type)}: {e}"
            )
            return None

    def _append(
        self,
        event_type: AuditEventType,
        actor,
        details: Optional[Dict[str, Any]],
        subject_account_id: Optional[str],
        client_context: Optional[Dict[str, Any]]
    ) -> AuditLogEntry:
        """Build the next chained entry and persist it together with the chain head"""
        event_type = parse_event_type(event_type)
        actor_identity = getattr(actor, 'identity', None) or "system"
        actor_is_admin = bool(getattr(actor, 'is_administrator', False))
        if client_context is None:
            client_context = dict(getattr(actor, 'client_context', None) or {})

        try:
            with self.storage.atomic():
                head = self.storage.load(self.head_table, "head") or {"sequence": 0, "hash": ""}
                now = self.clock()

                entry = AuditLogEntry(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    event_type=event_type,
                    actor_identity=actor_identity,
                    actor_is_admin=actor_is_admin,
                    sequence=head["sequence"] + 1,
                    previous_hash=head["hash"],
                    current_hash="",  # Calculated below
                    details=details or {},
                    subject_account_id=subject_account_id,
                    client_context=client_context
                )
                entry.current_hash = entry.calculate_hash()

                self.storage.insert(self.table_name, entry.id, entry.to_dict())
                self.storage.save(self.head_table, "head", {
                    "sequence": entry.sequence,
                    "hash": entry.current_hash
                })
        except Exception as e:
            raise AuditWriteError(str(e)) from e

        return entry

    def query(
        self,
        event_type: Optional[AuditEventType] = None,
        actor_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        subject_account_id: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditLogEntry]:
        """
        Get audit entries newest first

        Args:
            event_type: Only entries of this type
            actor_id: Only entries by this actor identity
            start_date: Start of time range (inclusive)
            end_date: End of time range (inclusive)
            subject_account_id: Only entries about this account
            limit: Maximum number of entries to return

        Returns:
            List of AuditLogEntry objects, newest first
        """
        filters = {}
        if event_type is not None:
            filters['event_type'] = parse_event_type(event_type).value
        if actor_id is not None:
            filters['actor_identity'] = actor_id
        if subject_account_id is not None:
            filters['subject_account_id'] = subject_account_id

        entries = [AuditLogEntry.from_dict(data) for data in self.storage.find(self.table_name, filters)]

        # Filter by time range
        if start_date:
            entries = [e for e in entries if e.created_at >= start_date]
        if end_date:
            entries = [e for e in entries if e.created_at <= end_date]

        entries.sort(key=lambda e: (e.created_at, e.sequence), reverse=True)

        if limit is not None:
            entries = entries[:max(limit, 0)]

        return entries

    def get_entry(self, entry_id: str) -> Optional[AuditLogEntry]:
        """Get a specific audit entry by ID"""
        data = self.storage.load(self.table_name, entry_id)
        if data:
            return AuditLogEntry.from_dict(data)
        return None

    def count_entries(self) -> int:
        """Get total number of audit entries"""
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        entries = [AuditLogEntry.from_dict(data) for data in self.storage.load_all(self.table_name)]
        entries.sort(key=lambda e: e.sequence)
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result

    # Job log

    def record_job(self, job_name: str, job_id: str, triggered_by,
                   results: Dict[str, Any]) -> Optional[JobLog]:
        """Persist a job summary (best effort) and audit the execution as the triggering caller"""
        now = self.clock()
        job_log = JobLog(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            job_name=job_name,
            job_id=job_id,
            triggered_by=triggered_by.identity,
            results=results
        )
        try:
            self.storage.insert(self.job_logs_table, job_log.id, job_log.to_dict())
        except Exception as e:
            self.logger.error(f"Failed to write job log for {job_name} ({job_id}): {e}")
            job_log = None

        self.record(
            AuditEventType.JOB_EXECUTED,
            triggered_by,
            {'job_name': job_name, 'job_id': job_id, 'triggered_by': triggered_by.identity, 'results': results}
        )
        return job_log

    def get_job_logs(self, job_name: Optional[str] = None, limit: int = 50) -> List[JobLog]:
        """Get job logs newest first"""
        filters = {'job_name': job_name} if job_name else {}
        logs = [JobLog.from_dict(data) for data in self.storage.find(self.job_logs_table, filters)]
        logs.sort(key=lambda log: log.created_at, reverse=True)
        return logs[:limit]
