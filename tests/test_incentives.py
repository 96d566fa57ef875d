"""
Test suite for the bonus eligibility engine

Tests rule ordering, milestone detection, cooldown, RDA exclusion, bonus
awards and the 12-transfer bonus cycle.
"""

import pytest
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from itertools import count

from remit_engine.beneficiaries import BeneficiaryKind
from remit_engine.bonuses import MilestoneTier
from remit_engine.config import EngineConfig
from remit_engine.currency import Money, Currency
from remit_engine.engine import RemittanceEngine
from remit_engine.errors import (
    DuplicateKeyError, IneligibleTransferError, InvalidAmountError, NotFoundError
)
from remit_engine.incentives import IneligibilityReason
from remit_engine.periods import current_period
from remit_engine.storage import InMemoryStorage


NOW = datetime(2025, 3, 20, 12, 0, tzinfo=timezone.utc)


def pkr(value) -> Money:
    return Money(Decimal(value), Currency.PKR)


class IncentiveTestBase:

    def setup_method(self):
        """Set up test fixtures"""
        self.engine = RemittanceEngine(storage=InMemoryStorage(), config=EngineConfig())
        self.bonus_engine = self.engine.bonus_engine
        self.customer = self.engine.customers.create_customer("Ayesha Khan", anchor_day=1)
        self.family = self.engine.beneficiaries.create_beneficiary(
            self.customer.id, BeneficiaryKind.OTHER, "Bilal Khan"
        )
        self.shop = self.engine.beneficiaries.create_beneficiary(
            self.customer.id, BeneficiaryKind.BUSINESS, "Khan Traders"
        )
        self.own_account = self.engine.beneficiaries.create_beneficiary(
            self.customer.id, BeneficiaryKind.SELF, "Ayesha Khan (Meezan)"
        )
        self._ref_ids = count(20000000000000)

    def _completed(self, amount, beneficiary, when, customer_id=None):
        transfer = self.engine.transfers.create(
            customer_id or self.customer.id,
            Decimal(amount),
            str(next(self._ref_ids)),
            beneficiary_id=beneficiary.id if beneficiary else None,
            created_at=when,
        )
        return self.engine.transfers.complete(transfer.id, when)

    def _history(self, n, beneficiary=None, amount="100", start=None):
        """n eligible transfers spaced two days apart, the last well outside the cooldown"""
        start = start or NOW - timedelta(days=2 * n + 3)
        return [
            self._completed(amount, beneficiary or self.family, start + timedelta(days=2 * i))
            for i in range(n)
        ]


class TestEligibilityRules(IncentiveTestBase):
    """Test the ordered eligibility rules"""

    def test_fourth_transfer_earns_first_milestone(self):
        self._history(3)

        result = self.bonus_engine.check_eligibility(self.customer.id, self.family.id, "100", NOW)

        assert result.eligible
        assert result.bonus_amount == pkr("500")
        assert result.transfer_number == 4
        assert result.transfer_count == 3
        assert result.milestone_tier == MilestoneTier.FOURTH

    @pytest.mark.parametrize("prior,bonus", [(7, "700"), (11, "1000")])
    def test_later_milestones(self, prior, bonus):
        self._history(prior)

        result = self.bonus_engine.check_eligibility(self.customer.id, self.shop.id, "85", NOW)

        assert result.eligible
        assert result.bonus_amount == pkr(bonus)
        assert result.transfer_number == prior + 1

    @pytest.mark.parametrize("amount", ["84.99", "0", "-100", "1"])
    def test_below_minimum_never_eligible(self, amount):
        self._history(3)

        result = self.bonus_engine.check_eligibility(self.customer.id, self.family.id, amount, NOW)

        assert not result.eligible
        assert result.reason_code == IneligibilityReason.BELOW_MINIMUM

    def test_minimum_is_inclusive(self):
        self._history(3)
        result = self.bonus_engine.check_eligibility(self.customer.id, self.family.id, "85", NOW)
        assert result.eligible

    def test_unknown_beneficiary(self):
        result = self.bonus_engine.check_eligibility(self.customer.id, "missing", "100", NOW)

        assert not result.eligible
        assert result.reason_code == IneligibilityReason.BENEFICIARY_NOT_FOUND

    def test_rda_excluded_regardless_of_history(self):
        self._history(3)

        result = self.bonus_engine.check_eligibility(self.customer.id, self.own_account.id, "200", NOW)

        assert not result.eligible
        assert result.reason_code == IneligibilityReason.RDA_EXCLUDED
        assert result.reason == "RDA transfers not eligible for bonus"

    def test_cooldown_blocks_milestone(self):
        self._history(2)
        self._completed("100", self.family, NOW - timedelta(hours=2))

        result = self.bonus_engine.check_eligibility(self.customer.id, self.family.id, "100", NOW)

        assert not result.eligible
        assert result.reason_code == IneligibilityReason.COOLDOWN

    def test_cooldown_boundary_is_inclusive(self):
        self._history(2)
        self._completed("100", self.family, NOW - timedelta(hours=24))

        result = self.bonus_engine.check_eligibility(self.customer.id, self.family.id, "100", NOW)

        assert result.reason_code == IneligibilityReason.COOLDOWN

    def test_cooldown_expires(self):
        self._history(2)
        self._completed("100", self.family, NOW - timedelta(hours=25))

        result = self.bonus_engine.check_eligibility(self.customer.id, self.family.id, "100", NOW)

        assert result.eligible

    def test_cooldown_is_per_beneficiary(self):
        self._history(2)
        self._completed("100", self.family, NOW - timedelta(hours=2))

        result = self.bonus_engine.check_eligibility(self.customer.id, self.shop.id, "100", NOW)

        assert result.eligible
        assert result.transfer_number == 4

    def test_rule_order_minimum_before_rda(self):
        result = self.bonus_engine.check_eligibility(self.customer.id, self.own_account.id, "10", NOW)
        assert result.reason_code == IneligibilityReason.BELOW_MINIMUM

    def test_no_milestone_reports_next(self):
        self._history(4)

        result = self.bonus_engine.check_eligibility(self.customer.id, self.family.id, "100", NOW)

        assert not result.eligible
        assert result.reason_code == IneligibilityReason.NO_MILESTONE
        assert result.next_milestone.transfers == 8
        assert result.next_milestone.bonus == pkr("700")
        assert result.next_milestone.remaining == 4

    def test_cycle_complete_has_no_next_milestone(self):
        self._history(12)

        result = self.bonus_engine.check_eligibility(self.customer.id, self.family.id, "100", NOW)

        assert not result.eligible
        assert result.next_milestone is None

    def test_malformed_amount_raises(self):
        with pytest.raises(InvalidAmountError):
            self.bonus_engine.check_eligibility(self.customer.id, self.family.id, "abc", NOW)


class TestEligibleCount(IncentiveTestBase):
    """Test which completed transfers count towards milestones"""

    def test_non_qualifying_transfers_ignored(self):
        self._history(2)
        base = NOW - timedelta(days=30)
        self._completed("84.99", self.family, base)
        self._completed("500", self.own_account, base)
        self._completed("500", None, base)
        pending = self.engine.transfers.create(
            self.customer.id, Decimal("500"), "99999999999999",
            beneficiary_id=self.family.id, created_at=base
        )
        failed = self.engine.transfers.create(
            self.customer.id, Decimal("500"), "99999999999998",
            beneficiary_id=self.family.id, created_at=base
        )
        self.engine.transfers.fail(failed.id, "Payout rejected", base)

        assert self.bonus_engine.eligible_transfer_count(self.customer.id) == 2
        assert self.engine.transfers.get(pending.id).status.value == "pending"

    def test_exclude_transfer(self):
        transfers = self._history(4)
        count = self.bonus_engine.eligible_transfer_count(
            self.customer.id, exclude_transfer_id=transfers[-1].id
        )
        assert count == 3

    def test_next_milestone_table(self):
        assert self.bonus_engine.next_milestone(0).transfers == 4
        assert self.bonus_engine.next_milestone(0).remaining == 4
        assert self.bonus_engine.next_milestone(4).transfers == 8
        assert self.bonus_engine.next_milestone(11).bonus == pkr("1000")
        assert self.bonus_engine.next_milestone(12) is None


class TestBonusAwards(IncentiveTestBase):
    """Test bonus creation, expiry and redemption"""

    def test_award_bonus(self):
        transfer = self._completed("100", self.family, NOW)

        bonus = self.bonus_engine.award_bonus(self.customer.id, "500", transfer.id, now=NOW)

        assert bonus.money == pkr("500")
        assert bonus.milestone_tier == MilestoneTier.FOURTH
        assert bonus.transfer_id == transfer.id
        assert bonus.expires_at == current_period(1, NOW).next_start
        assert bonus.cycle_anchor_id == self.customer.bonus_cycle_id
        assert self.engine.bonuses.find_by_transfer(transfer.id).id == bonus.id

    def test_second_award_for_transfer_rejected(self):
        transfer = self._completed("100", self.family, NOW)
        self.bonus_engine.award_bonus(self.customer.id, "500", transfer.id, now=NOW)

        with pytest.raises(DuplicateKeyError):
            self.bonus_engine.award_bonus(self.customer.id, "700", transfer.id, now=NOW)

        assert self.engine.bonuses.count_awarded(self.customer.id) == 1

    def test_unknown_bonus_amount_rejected(self):
        transfer = self._completed("100", self.family, NOW)
        with pytest.raises(InvalidAmountError):
            self.bonus_engine.award_bonus(self.customer.id, "123", transfer.id, now=NOW)

    def test_explicit_tier(self):
        transfer = self._completed("100", self.family, NOW)
        bonus = self.bonus_engine.award_bonus(
            self.customer.id, "250", transfer.id, milestone_tier=MilestoneTier.SECOND, now=NOW
        )
        assert bonus.milestone_tier == MilestoneTier.SECOND

    def test_award_for_rda_transfer_rejected(self):
        transfer = self._completed("100", self.own_account, NOW)

        with pytest.raises(IneligibleTransferError):
            self.bonus_engine.award_bonus(self.customer.id, "500", transfer.id, now=NOW)

        assert self.engine.bonuses.count_awarded(self.customer.id) == 0

    def test_award_below_minimum_rejected(self):
        transfer = self._completed("10", self.family, NOW)

        with pytest.raises(IneligibleTransferError):
            self.bonus_engine.award_bonus(self.customer.id, "500", transfer.id, now=NOW)

    def test_award_without_beneficiary_rejected(self):
        transfer = self._completed("100", None, NOW)

        with pytest.raises(IneligibleTransferError):
            self.bonus_engine.award_bonus(self.customer.id, "500", transfer.id, now=NOW)

    def test_award_for_unknown_transfer_rejected(self):
        with pytest.raises(NotFoundError):
            self.bonus_engine.award_bonus(self.customer.id, "500", "no-such-transfer", now=NOW)

        assert self.engine.bonuses.count_awarded(self.customer.id) == 0

    def test_award_for_other_customers_transfer_rejected(self):
        other = self.engine.customers.create_customer("Omar Sheikh", anchor_day=1)
        transfer = self._completed("100", self.family, NOW, customer_id=other.id)

        with pytest.raises(IneligibleTransferError):
            self.bonus_engine.award_bonus(self.customer.id, "500", transfer.id, now=NOW)

    def test_available_bonuses_and_redemption(self):
        current = self._completed("100", self.family, NOW)
        earlier = self._completed("100", self.shop, NOW - timedelta(days=60))
        bonus = self.bonus_engine.award_bonus(self.customer.id, "500", current.id, now=NOW)
        expired = self.bonus_engine.award_bonus(
            self.customer.id, "700", earlier.id, now=NOW - timedelta(days=60)
        )

        available = self.engine.bonuses.available_bonuses(self.customer.id, NOW)
        assert [b.id for b in available] == [bonus.id]

        used_at = NOW + timedelta(hours=1)
        self.engine.bonuses.mark_used(bonus.id, used_at)
        again = self.engine.bonuses.mark_used(bonus.id, used_at + timedelta(hours=1))

        assert again.used_at == used_at
        assert self.engine.bonuses.available_bonuses(self.customer.id, NOW) == []
        assert not expired.is_available(NOW)


class TestBonusCycle(IncentiveTestBase):
    """Test bonus status and cycle reset"""

    def test_bonus_status(self):
        transfers = self._history(4)
        self.bonus_engine.award_bonus(self.customer.id, "500", transfers[3].id, now=NOW)

        status = self.bonus_engine.get_bonus_status(self.customer.id)

        assert status.transfer_count == 4
        assert status.awarded_bonuses == 1
        assert status.total_bonus_amount == pkr("500")
        assert status.next_milestone.transfers == 8
        assert not status.cycle_complete

    def test_reset_refused_mid_cycle(self):
        self._history(11)
        assert not self.bonus_engine.reset_bonus_cycle(self.customer.id, NOW)
        assert self.bonus_engine.get_bonus_status(self.customer.id).transfer_count == 11

    def test_reset_restarts_counting(self):
        transfers = self._history(12)
        self.bonus_engine.award_bonus(self.customer.id, "1000", transfers[-1].id, now=NOW)
        before = self.bonus_engine.get_bonus_status(self.customer.id)
        assert before.cycle_complete

        assert self.bonus_engine.reset_bonus_cycle(self.customer.id, NOW)

        after = self.bonus_engine.get_bonus_status(self.customer.id)
        assert after.transfer_count == 0
        assert after.awarded_bonuses == 0
        assert after.cycle_anchor_id != before.cycle_anchor_id
        assert not after.cycle_complete

        self._history(3, start=NOW + timedelta(days=1))
        result = self.bonus_engine.check_eligibility(
            self.customer.id, self.shop.id, "100", NOW + timedelta(days=10)
        )
        assert result.eligible
        assert result.transfer_number == 4
