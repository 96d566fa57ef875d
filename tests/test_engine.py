"""
Integration tests for the remittance engine facade

Tests the submit/settle flow, reference ID retries and audited flag
transitions across all components.
"""

import pytest
from datetime import datetime, timezone, timedelta
from decimal import Decimal

from remit_engine.audit import AuditAction
from remit_engine.beneficiaries import BeneficiaryKind
from remit_engine.config import EngineConfig
from remit_engine.currency import Money, Currency
from remit_engine.engine import RemittanceEngine
from remit_engine.errors import (
    DuplicateKeyError, InvalidAmountError, InvalidTransitionError, NotFoundError
)
from remit_engine.flags import FlagAction, FlagSeverity, FlagStatus, FlagType
from remit_engine.refids import is_valid_ref_id
from remit_engine.storage import InMemoryStorage, SQLiteStorage
from remit_engine.transfers import TransferStatus


NOW = datetime(2025, 3, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def engine(request):
    storage = InMemoryStorage() if request.param == "memory" else SQLiteStorage(":memory:")
    engine = RemittanceEngine(
        storage=storage,
        config=EngineConfig(sla_hours={"critical": 8, "high": 24, "medium": 72, "low": 168})
    )
    yield engine
    storage.close()


@pytest.fixture
def customer(engine):
    return engine.customers.create_customer("Ayesha Khan", anchor_day=1)


@pytest.fixture
def family(engine, customer):
    return engine.beneficiaries.create_beneficiary(customer.id, BeneficiaryKind.OTHER, "Bilal Khan")


class TestSubmitAndSettle:
    """Test the transfer submission and settlement flow"""

    def test_submit_creates_pending_transfer(self, engine, customer, family):
        result = engine.submit_transfer(customer.id, "250", family.id, Decimal("90000"), now=NOW)

        assert result.accepted
        assert result.cap.allowed
        assert result.transfer.status == TransferStatus.PENDING
        assert is_valid_ref_id(result.transfer.ref_id)
        assert engine.transfers.get_by_ref_id(result.transfer.ref_id).id == result.transfer.id

    def test_submit_denied_by_cap(self, engine, customer, family):
        first = engine.submit_transfer(customer.id, "4800", family.id, now=NOW - timedelta(days=5))
        engine.settle_transfer(first.transfer.id, NOW - timedelta(days=5))

        result = engine.submit_transfer(customer.id, "300", family.id, now=NOW)

        assert not result.accepted
        assert result.transfer is None
        assert result.cap.remaining == Money(Decimal("200"), Currency.GBP)
        assert len(engine.storage.load_all("transfers")) == 1

    def test_submit_rejects_bad_input(self, engine, customer, family):
        with pytest.raises(InvalidAmountError):
            engine.submit_transfer(customer.id, "0", family.id, now=NOW)
        with pytest.raises(NotFoundError):
            engine.submit_transfer(customer.id, "100", "missing", now=NOW)
        with pytest.raises(NotFoundError):
            engine.submit_transfer("missing", "100", family.id, now=NOW)

    def test_naive_timestamps_read_as_utc(self, engine, customer, family):
        naive = datetime(2025, 3, 15, 12, 0)
        submitted = engine.submit_transfer(customer.id, "4800", family.id, now=naive)
        settled = engine.settle_transfer(submitted.transfer.id, naive + timedelta(minutes=5))

        assert settled.transfer.created_at == naive.replace(tzinfo=timezone.utc)
        assert settled.transfer.completed_at.tzinfo is not None

        result = engine.check_cap(customer.id, "300", now=naive + timedelta(days=1))

        assert not result.allowed
        assert result.remaining == Money(Decimal("200"), Currency.GBP)

    def test_ref_id_collision_retried(self, engine, customer, family):
        engine.transfers.create(customer.id, Decimal("10"), "11111111111111", created_at=NOW)
        candidates = iter(["11111111111111", "22222222222222"])
        engine.generate_ref_id = lambda: next(candidates)

        result = engine.submit_transfer(customer.id, "100", family.id, now=NOW)

        assert result.transfer.ref_id == "22222222222222"

    def test_ref_id_retries_exhausted(self, engine, customer, family):
        engine.transfers.create(customer.id, Decimal("10"), "11111111111111", created_at=NOW)
        engine.generate_ref_id = lambda: "11111111111111"

        with pytest.raises(DuplicateKeyError):
            engine.submit_transfer(customer.id, "100", family.id, now=NOW)

    def test_settlement_awards_fourth_transfer_bonus(self, engine, customer, family):
        bonuses = []
        for day in range(4):
            when = NOW + timedelta(days=2 * day)
            submitted = engine.submit_transfer(customer.id, "100", family.id, now=when)
            settled = engine.settle_transfer(submitted.transfer.id, when + timedelta(minutes=10))
            bonuses.append(settled.bonus)

        assert bonuses[:3] == [None, None, None]
        assert bonuses[3].money == Money(Decimal("500"), Currency.PKR)
        assert bonuses[3].milestone_tier.value == 4

        status = engine.get_bonus_status(customer.id)
        assert status.transfer_count == 4
        assert status.awarded_bonuses == 1
        assert status.next_milestone.transfers == 8

    def test_settlement_within_cooldown_earns_nothing(self, engine, customer, family):
        for day in range(3):
            when = NOW - timedelta(days=10 - 2 * day)
            submitted = engine.submit_transfer(customer.id, "100", family.id, now=when)
            engine.settle_transfer(submitted.transfer.id, when)

        first = engine.submit_transfer(customer.id, "100", family.id, now=NOW)
        second = engine.submit_transfer(customer.id, "100", family.id, now=NOW + timedelta(hours=1))
        engine.settle_transfer(first.transfer.id, NOW + timedelta(hours=2))
        settled = engine.settle_transfer(second.transfer.id, NOW + timedelta(hours=3))

        assert not settled.eligibility.eligible
        assert settled.bonus is None

    def test_settlement_refreshes_used_limit(self, engine, customer, family):
        submitted = engine.submit_transfer(customer.id, "750", family.id, now=NOW)
        engine.settle_transfer(submitted.transfer.id, NOW)

        assert engine.customers.get_customer(customer.id).used_limit == Decimal("750")

    def test_settlement_without_beneficiary(self, engine, customer):
        submitted = engine.submit_transfer(customer.id, "100", now=NOW)
        settled = engine.settle_transfer(submitted.transfer.id, NOW)

        assert settled.transfer.status == TransferStatus.COMPLETED
        assert settled.eligibility is None

    def test_caller_operations(self, engine, customer, family):
        assert engine.check_cap(customer.id, "100", NOW).allowed
        result = engine.check_eligibility(customer.id, family.id, "100", NOW)
        assert not result.eligible
        assert result.next_milestone.remaining == 4
        assert len(engine.generate_ref_id()) == 14


class TestAuditedTransitions:
    """Test flag transitions through the facade"""

    def test_transition_writes_audit_record(self, engine, customer):
        flag = engine.create_flag(
            customer.id, FlagType.AML_FLAG, FlagSeverity.CRITICAL,
            title="Structuring", created_at=NOW - timedelta(hours=9)
        )

        engine.transition(flag.id, FlagAction.HOLD, actor_id="mlro-1", now=NOW)
        engine.transition(flag.id, FlagAction.APPROVE, "Documents verified", actor_id="mlro-1", now=NOW)

        events = engine.audit_trail.get_events_for_resource("MLRO_FLAG", flag.id)
        assert [e.action for e in events] == [AuditAction.HOLD_MLRO.value, AuditAction.APPROVE_MLRO.value]
        assert events[0].before["status"] == "pending"
        assert events[0].after["status"] == "hold"
        assert events[1].actor_id == "mlro-1"
        assert events[1].metadata["notes"] == "Documents verified"
        assert engine.audit_trail.verify_integrity()['valid']

    def test_rejected_transition_not_audited(self, engine, customer):
        flag = engine.create_flag(customer.id, FlagType.KYC_ISSUE, FlagSeverity.LOW)
        engine.transition(flag.id, FlagAction.REJECT, "Forged document", now=NOW)

        with pytest.raises(InvalidTransitionError):
            engine.transition(flag.id, FlagAction.APPROVE, now=NOW)

        assert engine.audit_trail.count_events() == 1

    def test_sla_status_through_facade(self, engine, customer):
        flag = engine.create_flag(
            customer.id, FlagType.SUSPICIOUS_ACTIVITY, FlagSeverity.CRITICAL,
            created_at=NOW - timedelta(hours=9)
        )
        engine.transition(flag.id, FlagAction.HOLD, now=NOW - timedelta(hours=8))

        assert engine.get_sla_status(flag.id, NOW).breached
        assert [f.id for f in engine.breached_flags(NOW)] == [flag.id]
        assert [f.id for f in engine.list_flags(status=FlagStatus.HOLD)] == [flag.id]

    def test_bonus_cycle_reset_audited(self, engine, customer, family):
        for i in range(12):
            transfer = engine.transfers.create(
                customer.id, Decimal("100"), str(50000000000000 + i),
                beneficiary_id=family.id, created_at=NOW - timedelta(days=30 - 2 * i)
            )
            engine.transfers.complete(transfer.id, NOW - timedelta(days=30 - 2 * i))

        assert engine.reset_bonus_cycle(customer.id, actor_id="ops-1", now=NOW)
        assert not engine.reset_bonus_cycle(customer.id, actor_id="ops-1", now=NOW)

        events = engine.audit_trail.get_events_for_resource("CUSTOMER", customer.id)
        assert [e.action for e in events] == [AuditAction.RESET_BONUS_CYCLE.value]
