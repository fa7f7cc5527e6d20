"""
Error Taxonomy

Only configuration, validation, permission, state-transition and lookup
errors reach callers. Per-account job failures are aggregated into job
results and audit write failures are logged and dropped.
"""


class BankcoreError(Exception):
    """Base class for all ledger engine errors"""


class ConfigurationError(BankcoreError):
    """System configuration makes the operation impossible (no writes done)"""


class ValidationError(BankcoreError, ValueError):
    """Malformed input: bad amount, unknown type or status"""


class PermissionDeniedError(BankcoreError, PermissionError):
    """Caller is not allowed to perform the operation"""


class InvalidStateTransition(BankcoreError):
    """Requested transition does not start from the record's current state"""
    
    def __init__(self, entity_id: str, current: str, attempted: str):
        self.entity_id = entity_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} {entity_id}: current status is '{current}'"
        )


class NotFoundError(BankcoreError, LookupError):
    """Referenced record does not exist"""


class DuplicateRecordError(BankcoreError):
    """Create-only write hit an existing record id"""
    
    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"Record {record_id} already exists in {table}")


class PerAccountProcessingError(BankcoreError):
    """One account's step of a batch job failed"""
    
    def __init__(self, account_id: str, cause: Exception):
        self.account_id = account_id
        self.cause = cause
        super().__init__(f"{account_id}: {cause}")


class AuditWriteError(BankcoreError):
    """Audit entry could not be persisted"""
