"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection, integrity verification,
best-effort writes and the job log.
"""

import pytest
from datetime import datetime, timezone, timedelta
from decimal import Decimal

from bankcore.storage import InMemoryStorage
from bankcore.accounts import Caller
from bankcore.errors import ValidationError
from bankcore.audit import AuditTrail, AuditLogEntry, AuditEventType, parse_event_type


NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
ADMIN = Caller(identity="admin-1", account_id="house", is_administrator=True)
CUSTOMER = Caller(identity="alice", account_id="acct-alice", client_context={"ip": "10.0.0.1"})


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage, clock=lambda: NOW)


class TestAuditLogEntry:

    def test_details_are_serialized(self):
        entry = AuditLogEntry(
            id="AUDIT001", created_at=NOW, updated_at=NOW,
            event_type=AuditEventType.INTEREST_PAID, actor_identity="admin-1",
            actor_is_admin=True, sequence=1, previous_hash="", current_hash="",
            details={"amount": Decimal("20.00"), "when": NOW, "type": AuditEventType.INTEREST_PAID}
        )

        assert entry.details == {
            "amount": "20.00", "when": NOW.isoformat(), "type": "interest_paid"
        }
        assert entry.timestamp == NOW

    def test_hash_is_deterministic(self):
        entry = AuditLogEntry(
            id="AUDIT002", created_at=NOW, updated_at=NOW,
            event_type=AuditEventType.CONFIG_UPDATED, actor_identity="admin-1",
            actor_is_admin=True, sequence=1, previous_hash="prev", current_hash=""
        )
        digest = entry.calculate_hash()

        assert len(digest) == 64
        assert digest == entry.calculate_hash()
        entry.current_hash = digest
        assert entry.verify_hash()

    def test_unknown_event_type_rejected(self):
        with pytest.raises(ValidationError):
            parse_event_type("money_printed")


class TestRecording:

    def test_record_chains_entries(self, audit_trail):
        first = audit_trail.record(AuditEventType.ACCOUNT_REGISTERED, CUSTOMER, subject_account_id="acct-alice")
        second = audit_trail.record(AuditEventType.CONFIG_UPDATED, ADMIN, {"changes": {}})

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert audit_trail.count_entries() == 2

    def test_actor_fields_and_client_context(self, audit_trail):
        entry = audit_trail.record(AuditEventType.WITHDRAWAL_REQUEST_CREATED, CUSTOMER)

        assert entry.actor_identity == "alice"
        assert entry.actor_is_admin is False
        assert entry.client_context == {"ip": "10.0.0.1"}

    def test_system_actor_when_none(self, audit_trail):
        entry = audit_trail.record(AuditEventType.JOB_EXECUTED, None)
        assert entry.actor_identity == "system"

    def test_entries_are_persisted(self, audit_trail):
        entry = audit_trail.record(AuditEventType.INTEREST_PAID, ADMIN, {"amount": Decimal("1.00")})
        loaded = audit_trail.get_entry(entry.id)

        assert loaded.event_type == AuditEventType.INTEREST_PAID
        assert loaded.details["amount"] == "1.00"
        assert loaded.verify_hash()

    def test_disabled_trail_writes_nothing(self, storage):
        trail = AuditTrail(storage, enabled=False)
        assert trail.record(AuditEventType.CONFIG_UPDATED, ADMIN) is None
        assert trail.count_entries() == 0

    def test_write_failure_is_swallowed(self, audit_trail, storage, monkeypatch):
        def broken(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(storage, "insert", broken)
        assert audit_trail.record(AuditEventType.CONFIG_UPDATED, ADMIN) is None

        monkeypatch.undo()
        # Chain head did not move
        entry = audit_trail.record(AuditEventType.CONFIG_UPDATED, ADMIN)
        assert entry.sequence == 1


class TestIntegrity:

    def test_untouched_chain_is_valid(self, audit_trail):
        for _ in range(3):
            audit_trail.record(AuditEventType.CONFIG_UPDATED, ADMIN)

        result = audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_entries"] == 3

    def test_modified_entry_is_detected(self, audit_trail, storage):
        audit_trail.record(AuditEventType.CONFIG_UPDATED, ADMIN, {"rate": "2"})
        target = audit_trail.record(AuditEventType.INTEREST_PAID, ADMIN, {"amount": "20.00"})

        data = storage.load("audit_logs", target.id)
        data["details"]["amount"] = "2000.00"
        storage.save("audit_logs", target.id, data)

        result = audit_trail.verify_integrity()
        assert not result["valid"]
        assert [e["entry_id"] for e in result["hash_errors"]] == [target.id]

    def test_deleted_entry_breaks_chain(self, audit_trail, storage):
        audit_trail.record(AuditEventType.CONFIG_UPDATED, ADMIN)
        middle = audit_trail.record(AuditEventType.CONFIG_UPDATED, ADMIN)
        audit_trail.record(AuditEventType.CONFIG_UPDATED, ADMIN)

        storage.delete("audit_logs", middle.id)

        result = audit_trail.verify_integrity()
        assert not result["valid"]
        assert len(result["chain_breaks"]) == 1


class TestQuery:

    def test_newest_first_with_limit(self, audit_trail):
        entries = [audit_trail.record(AuditEventType.CONFIG_UPDATED, ADMIN) for _ in range(5)]

        results = audit_trail.query(limit=3)
        assert [e.id for e in results] == [e.id for e in reversed(entries)][:3]

    def test_filters(self, storage):
        times = iter([NOW - timedelta(days=2), NOW - timedelta(days=1), NOW])
        trail = AuditTrail(storage, clock=lambda: next(times))

        trail.record(AuditEventType.ACCOUNT_REGISTERED, CUSTOMER, subject_account_id="acct-alice")
        trail.record(AuditEventType.WITHDRAWAL_REQUEST_CREATED, CUSTOMER, subject_account_id="acct-alice")
        trail.record(AuditEventType.WITHDRAWAL_REQUEST_APPROVED, ADMIN, subject_account_id="acct-alice")

        assert len(trail.query(event_type=AuditEventType.ACCOUNT_REGISTERED)) == 1
        assert len(trail.query(event_type="withdrawal_request_approved")) == 1
        assert len(trail.query(actor_id="alice")) == 2
        assert len(trail.query(subject_account_id="acct-alice")) == 3
        assert len(trail.query(start_date=NOW - timedelta(hours=36))) == 2
        assert len(trail.query(end_date=NOW - timedelta(hours=36))) == 1


class TestJobLog:

    def test_record_job_writes_log_and_event(self, audit_trail):
        job_log = audit_trail.record_job("calculate_interest", "interest_1", ADMIN,
                                         {"processed": 2, "total_paid": Decimal("40.00")})

        assert job_log.results["total_paid"] == "40.00"
        logs = audit_trail.get_job_logs("calculate_interest")
        assert [log.job_id for log in logs] == ["interest_1"]

        events = audit_trail.query(event_type=AuditEventType.JOB_EXECUTED)
        assert events[0].details["job_id"] == "interest_1"
        assert logs[0].triggered_by == "admin-1"

    def test_job_event_recorded_as_triggering_admin(self, audit_trail):
        audit_trail.record_job("calculate_interest", "interest_1", ADMIN, {})

        [event] = audit_trail.query(actor_id="admin-1", event_type=AuditEventType.JOB_EXECUTED)
        assert event.actor_is_admin
        assert event.details["triggered_by"] == "admin-1"

    def test_job_logs_filtered_by_name(self, audit_trail):
        audit_trail.record_job("calculate_interest", "i1", ADMIN, {})
        audit_trail.record_job("send_monthly_statements", "s1", ADMIN, {})

        assert len(audit_trail.get_job_logs()) == 2
        assert [log.job_id for log in audit_trail.get_job_logs("send_monthly_statements")] == ["s1"]
