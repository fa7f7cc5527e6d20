"""
bankcore

Ledger and workflow engine for a small multi-account bank: balances derived
from an append-only transaction log, an idempotent monthly interest job,
withdrawal approvals mirrored into the house account, and an immutable
audit trail.
"""

__version__ = "1.0.0"
