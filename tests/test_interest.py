"""
Test suite for interest module

Tests monthly interest posting, rounding, skip rules, re-run safety and
concurrent runs. Interest must be paid at most once per account per month.
"""

import pytest
import threading
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from bankcore.config import BankcoreConfig
from bankcore.storage import InMemoryStorage, SQLiteStorage
from bankcore.accounts import Caller
from bankcore.audit import AuditEventType
from bankcore.errors import ConfigurationError, PermissionDeniedError
from bankcore.interest import posting_key
from bankcore.ledger import TransactionType
from bankcore.service import build_service


class Clock:
    """Settable time source"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


ADMIN = Caller(identity="admin", account_id="house", is_administrator=True)


def make_service(storage, clock, rate="2"):
    config = BankcoreConfig(storage_backend="memory", default_interest_rate_percent=rate)
    return build_service(config=config, storage=storage, clock=clock, configure_logging=False)


@pytest.fixture
def clock():
    return Clock(datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def service(clock):
    service = make_service(InMemoryStorage(), clock)
    service.account_manager.register_account(
        "admin", "House", "house@example.com", is_administrator=True, account_id="house", actor=ADMIN
    )
    return service


@pytest.fixture
def customer(service):
    account = service.account_manager.register_account("alice", "Alice", "alice@example.com", account_id="alice-acct")
    service.ledger.append_transaction(account.id, TransactionType.DEPOSIT, Decimal("1000.00"), "Opening", "admin")
    return account


def interest_transactions(service, account_id):
    return service.ledger.get_transactions(account_id, transaction_type=TransactionType.INTEREST)


class TestInterestPosting:

    def test_pays_monthly_interest(self, service, customer):
        result = service.interest_job.run(ADMIN)

        assert result.processed == 1
        assert result.total_paid == Decimal("20.00")
        assert result.skipped_zero_balance == 1  # The empty house account
        assert result.errors == []
        assert service.ledger.get_balance(customer.id) == Decimal("1020.00")

        (txn,) = interest_transactions(service, customer.id)
        assert txn.amount == Decimal("20.00")
        assert txn.description == "Monthly Interest Payment - 2% on $1000.00"
        assert txn.job_id == result.job_id
        assert txn.created_by == "admin"

    def test_rounds_half_up(self, clock):
        service = make_service(InMemoryStorage(), clock, rate="1.5")
        account = service.account_manager.register_account("bob", "Bob", "bob@example.com")
        service.ledger.append_transaction(account.id, TransactionType.DEPOSIT, "100.30", "Opening", "bob")

        service.interest_job.run(ADMIN)

        # 100.30 * 1.5% = 1.5045
        (txn,) = interest_transactions(service, account.id)
        assert txn.amount == Decimal("1.50")

        service.ledger.append_transaction(account.id, TransactionType.DEPOSIT, "0.20", "Top up", "bob")
        clock.advance(days=31)
        service.interest_job.run(ADMIN)
        # 102.00 * 1.5% = 1.53
        assert interest_transactions(service, account.id)[0].amount == Decimal("1.53")

    def test_skips_non_positive_balances(self, service):
        overdrawn = service.account_manager.register_account("carol", "Carol", "carol@example.com")
        service.ledger.append_transaction(overdrawn.id, TransactionType.WITHDRAWAL, "10.00", "Overdraft", "admin")

        result = service.interest_job.run(ADMIN)

        assert result.skipped_zero_balance == 2
        assert result.processed == 0
        assert interest_transactions(service, overdrawn.id) == []

    def test_skips_interest_below_one_cent(self, service):
        tiny = service.account_manager.register_account("dave", "Dave", "dave@example.com")
        service.ledger.append_transaction(tiny.id, TransactionType.DEPOSIT, "0.20", "Coins", "admin")

        result = service.interest_job.run(ADMIN)

        assert result.skipped_too_small == 1
        assert interest_transactions(service, tiny.id) == []

    def test_audits_payment_and_job(self, service, customer):
        result = service.interest_job.run(ADMIN)

        (paid,) = service.audit_trail.query(event_type=AuditEventType.INTEREST_PAID)
        assert paid.subject_account_id == customer.id
        assert paid.details["balance_before"] == "1000.00"
        assert paid.details["balance_after"] == "1020.00"

        (job_log,) = service.audit_trail.get_job_logs("calculate_interest")
        assert job_log.job_id == result.job_id
        assert job_log.results["processed"] == 1


class TestPreconditions:

    def test_non_admin_refused_before_writes(self, service, customer):
        with pytest.raises(PermissionDeniedError):
            service.interest_job.run(Caller(identity="alice", account_id=customer.id))

        assert interest_transactions(service, customer.id) == []
        assert service.audit_trail.get_job_logs() == []

    def test_zero_rate_is_configuration_error(self, clock):
        service = make_service(InMemoryStorage(), clock, rate="0")
        account = service.account_manager.register_account("bob", "Bob", "bob@example.com")
        service.ledger.append_transaction(account.id, TransactionType.DEPOSIT, "100.00", "Opening", "bob")

        with pytest.raises(ConfigurationError):
            service.interest_job.run(ADMIN)
        assert interest_transactions(service, account.id) == []

    def test_rate_from_system_config(self, service, customer):
        service.system_config.update(ADMIN, interest_rate_percent="3")

        result = service.interest_job.run(ADMIN)

        assert result.interest_rate_percent == Decimal("3")
        assert result.total_paid == Decimal("30.00")


class TestRerunSafety:

    def test_second_run_same_month_pays_nothing(self, service, customer, clock):
        service.interest_job.run(ADMIN)
        clock.advance(days=2)
        second = service.interest_job.run(ADMIN)

        assert second.processed == 0
        assert second.already_paid == 1
        assert len(interest_transactions(service, customer.id)) == 1
        assert service.ledger.get_balance(customer.id) == Decimal("1020.00")

    def test_next_month_pays_again(self, service, customer, clock):
        service.interest_job.run(ADMIN)
        clock.advance(days=31)
        service.interest_job.run(ADMIN)

        assert len(interest_transactions(service, customer.id)) == 2
        # 1020.00 * 2% = 20.40
        assert service.ledger.get_balance(customer.id) == Decimal("1040.40")

    def test_posting_key_guards_race(self, service, customer, monkeypatch):
        """A run that misses the month check still cannot post twice"""
        service.interest_job.run(ADMIN)
        monkeypatch.setattr(service.ledger, "has_transaction_in_month", lambda *args: False)

        second = service.interest_job.run(ADMIN)

        assert second.already_paid == 1
        assert second.processed == 0
        assert len(interest_transactions(service, customer.id)) == 1
        assert service.ledger.recompute_balance(customer.id) == Decimal("1020.00")
        assert service.storage.exists("interest_postings", posting_key(customer.id, 2025, 3))

    def test_per_account_failure_does_not_stop_job(self, service, customer, monkeypatch):
        other = service.account_manager.register_account("erin", "Erin", "erin@example.com")
        service.ledger.append_transaction(other.id, TransactionType.DEPOSIT, "500.00", "Opening", "admin")

        original = service.ledger.recompute_balance

        def flaky(account_id, persist=True):
            if account_id == customer.id:
                raise RuntimeError("log unavailable")
            return original(account_id, persist)

        monkeypatch.setattr(service.ledger, "recompute_balance", flaky)
        result = service.interest_job.run(ADMIN)

        assert result.errors == [{"account_id": customer.id, "error": "log unavailable"}]
        assert result.processed == 1
        assert interest_transactions(service, other.id)[0].amount == Decimal("10.00")


class TestConcurrentRuns:

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_concurrent_runs_post_once(self, clock, tmp_path, backend):
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage(tmp_path / "race.db")
        service = make_service(storage, clock)
        accounts = []
        for i in range(5):
            account = service.account_manager.register_account(f"user{i}", f"User {i}", f"user{i}@example.com")
            service.ledger.append_transaction(account.id, TransactionType.DEPOSIT, "100.00", "Opening", "admin")
            accounts.append(account)

        results = []
        errors = []

        def run_job():
            try:
                results.append(service.interest_job.run(ADMIN))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run_job) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        assert sum(r.processed for r in results) == 5
        for account in accounts:
            assert len(interest_transactions(service, account.id)) == 1
            assert service.ledger.recompute_balance(account.id) == Decimal("102.00")
        storage.close()
