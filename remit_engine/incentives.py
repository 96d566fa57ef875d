"""
Bonus Eligibility Engine

Decides whether a transfer earns a milestone bonus. Rules are evaluated in
order and the first failing rule short-circuits:

1. amount below the bonus minimum
2. beneficiary not found
3. beneficiary is the customer's own account (RDA)
4. a completed transfer to the same beneficiary within the cooldown window
5. the customer's eligible transfer count does not land on a milestone

Non-eligibility is a normal result. Only malformed input and storage failures
raise.
"""

from decimal import Decimal
from datetime import datetime, timedelta
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .beneficiaries import BeneficiaryStore
from .bonuses import BONUS_CURRENCY, Bonus, BonusStore, MilestoneTier
from .caps import RECORD_CURRENCY
from .config import EngineConfig, resolve_config
from .currency import AmountLike, Money, to_money
from .customers import CustomerStore
from .errors import IneligibleTransferError, InvalidAmountError, NotFoundError
from .logging_config import get_logger, log_action
from .periods import current_period
from .storage import utc_timestamp
from .transfers import TransferStore


class IneligibilityReason(Enum):
    BELOW_MINIMUM = "below_minimum"
    CUSTOMER_NOT_FOUND = "customer_not_found"
    BENEFICIARY_NOT_FOUND = "beneficiary_not_found"
    RDA_EXCLUDED = "rda_excluded"
    COOLDOWN = "cooldown"
    NO_MILESTONE = "no_milestone"


@dataclass(frozen=True)
class NextMilestone:
    transfers: int
    bonus: Money
    remaining: int


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: str
    reason_code: Optional[IneligibilityReason] = None
    bonus_amount: Optional[Money] = None
    transfer_number: Optional[int] = None
    transfer_count: Optional[int] = None
    next_milestone: Optional[NextMilestone] = None

    @property
    def milestone_tier(self) -> Optional[MilestoneTier]:
        if not self.eligible:
            return None
        return MilestoneTier(self.transfer_number)


@dataclass(frozen=True)
class BonusStatus:
    transfer_count: int
    awarded_bonuses: int
    total_bonus_amount: Money
    next_milestone: Optional[NextMilestone]
    cycle_complete: bool
    cycle_anchor_id: str


class BonusEligibilityEngine:
    """Milestone bonus eligibility, awards and cycle management"""

    def __init__(
        self,
        customers: CustomerStore,
        beneficiaries: BeneficiaryStore,
        transfers: TransferStore,
        bonuses: BonusStore,
        config: Optional[EngineConfig] = None
    ):
        self.customers = customers
        self.beneficiaries = beneficiaries
        self.transfers = transfers
        self.bonuses = bonuses
        self.config = resolve_config(config)
        self.logger = get_logger("remit_engine.incentives")

    @property
    def minimum_amount(self) -> Money:
        return Money(self.config.bonus_minimum_amount, RECORD_CURRENCY)

    def next_milestone(self, transfer_count: int) -> Optional[NextMilestone]:
        """Smallest milestone beyond `transfer_count`, or None once the cycle is complete"""
        for threshold, bonus in self.config.milestone_bonuses.items():
            if threshold > transfer_count:
                return NextMilestone(
                    transfers=threshold,
                    bonus=Money(Decimal(bonus), BONUS_CURRENCY),
                    remaining=threshold - transfer_count,
                )
        return None

    def eligible_transfer_count(self, customer_id: str,
                                exclude_transfer_id: Optional[str] = None) -> int:
        """Qualifying completed transfers in the customer's current bonus cycle"""
        customer = self.customers.get_customer(customer_id)
        return self.transfers.count_eligible(
            customer_id,
            self.config.bonus_minimum_amount,
            since=customer.bonus_cycle_started_at,
            exclude_transfer_id=exclude_transfer_id,
        )

    def check_eligibility(
        self,
        customer_id: str,
        beneficiary_id: str,
        amount: AmountLike,
        now: Optional[datetime] = None,
        exclude_transfer_id: Optional[str] = None
    ) -> EligibilityResult:
        """
        Decide whether a transfer of `amount` to `beneficiary_id` earns a bonus

        Args:
            customer_id: Sending customer
            beneficiary_id: Receiving beneficiary
            amount: Transfer amount in the currency of record
            now: Evaluation time (defaults to the current time)
            exclude_transfer_id: The transfer being evaluated, when it is
                already stored as completed

        Raises:
            InvalidAmountError: If the amount cannot be parsed
        """
        requested = to_money(amount, RECORD_CURRENCY)
        now = utc_timestamp(now)
        minimum = self.minimum_amount

        if requested < minimum:
            return EligibilityResult(
                eligible=False,
                reason=f"Amount below {minimum.to_string()} minimum for bonus",
                reason_code=IneligibilityReason.BELOW_MINIMUM,
            )

        beneficiary = self.beneficiaries.find_beneficiary(beneficiary_id)
        if beneficiary is None:
            return EligibilityResult(
                eligible=False,
                reason="Beneficiary not found",
                reason_code=IneligibilityReason.BENEFICIARY_NOT_FOUND,
            )

        if beneficiary.is_rda:
            return EligibilityResult(
                eligible=False,
                reason="RDA transfers not eligible for bonus",
                reason_code=IneligibilityReason.RDA_EXCLUDED,
            )

        cooldown = timedelta(hours=self.config.bonus_cooldown_hours)
        recent = self.transfers.last_completed_to_beneficiary_since(
            customer_id, beneficiary_id, now - cooldown, exclude_transfer_id
        )
        if recent is not None:
            return EligibilityResult(
                eligible=False,
                reason=(
                    f"Less than {self.config.bonus_cooldown_hours} hours since "
                    f"last transfer to this beneficiary"
                ),
                reason_code=IneligibilityReason.COOLDOWN,
            )

        try:
            transfer_count = self.eligible_transfer_count(customer_id, exclude_transfer_id)
        except NotFoundError:
            return EligibilityResult(
                eligible=False,
                reason="Customer not found",
                reason_code=IneligibilityReason.CUSTOMER_NOT_FOUND,
            )

        transfer_number = transfer_count + 1
        bonus = self.config.milestone_bonuses.get(transfer_number)
        if bonus is not None:
            return EligibilityResult(
                eligible=True,
                reason=f"Bonus eligible for transfer #{transfer_number}",
                bonus_amount=Money(Decimal(bonus), BONUS_CURRENCY),
                transfer_number=transfer_number,
                transfer_count=transfer_count,
            )

        return EligibilityResult(
            eligible=False,
            reason=f"Transfer #{transfer_number} not eligible for bonus",
            reason_code=IneligibilityReason.NO_MILESTONE,
            transfer_count=transfer_count,
            next_milestone=self.next_milestone(transfer_count),
        )

    def _tier_for_amount(self, bonus_amount: Money) -> MilestoneTier:
        for threshold, bonus in self.config.milestone_bonuses.items():
            if Money(Decimal(bonus), BONUS_CURRENCY) == bonus_amount:
                return MilestoneTier(threshold)
        raise InvalidAmountError(
            f"{bonus_amount.to_string()} does not match any configured milestone bonus"
        )

    def _check_qualifying_transfer(self, customer_id: str, transfer_id: str) -> None:
        transfer = self.transfers.get(transfer_id)
        if transfer.customer_id != customer_id:
            raise IneligibleTransferError(transfer_id, f"sent by another customer than {customer_id}")
        if Money(transfer.amount, RECORD_CURRENCY) < self.minimum_amount:
            raise IneligibleTransferError(
                transfer_id, f"below {self.minimum_amount.to_string()} minimum"
            )
        beneficiary = (
            self.beneficiaries.find_beneficiary(transfer.beneficiary_id)
            if transfer.beneficiary_id else None
        )
        if beneficiary is None:
            raise IneligibleTransferError(transfer_id, "beneficiary not found")
        if beneficiary.is_rda:
            raise IneligibleTransferError(transfer_id, "RDA transfer")

    def award_bonus(
        self,
        customer_id: str,
        bonus_amount: AmountLike,
        transfer_id: str,
        milestone_tier: Optional[MilestoneTier] = None,
        now: Optional[datetime] = None
    ) -> Bonus:
        """
        Create the bonus for a qualifying transfer

        The caller must not award twice for the same transfer; a second award
        is rejected by storage with DuplicateKeyError. The bonus expires at the
        end of the customer's current cap period.

        Raises:
            NotFoundError: If the customer or transfer is unknown
            IneligibleTransferError: If the transfer belongs to another
                customer, is below the bonus minimum or goes to an unknown
                or RDA beneficiary
        """
        amount = to_money(bonus_amount, BONUS_CURRENCY)
        if not amount.is_positive():
            raise InvalidAmountError(f"Bonus must be positive, got {amount.to_string()}")
        tier = milestone_tier or self._tier_for_amount(amount)
        customer = self.customers.get_customer(customer_id)
        self._check_qualifying_transfer(customer_id, transfer_id)
        now = utc_timestamp(now)
        period = current_period(customer.anchor_day, now, self.config.timezone)

        bonus = self.bonuses.create_bonus(
            customer_id=customer_id,
            transfer_id=transfer_id,
            amount=amount.amount,
            milestone_tier=tier,
            awarded_at=now,
            expires_at=period.next_start,
            cycle_anchor_id=customer.bonus_cycle_id,
        )
        log_action(
            self.logger, "info", "Milestone bonus awarded",
            customer_id=customer_id, action="award_bonus", resource="bonus",
            extra={
                "bonus_id": bonus.id,
                "transfer_id": transfer_id,
                "amount": str(amount.amount),
                "milestone_tier": tier.value,
            }
        )
        return bonus

    def get_bonus_status(self, customer_id: str) -> BonusStatus:
        """Progress through the customer's current 12-transfer bonus cycle"""
        customer = self.customers.get_customer(customer_id)
        transfer_count = self.transfers.count_eligible(
            customer_id,
            self.config.bonus_minimum_amount,
            since=customer.bonus_cycle_started_at,
        )
        return BonusStatus(
            transfer_count=transfer_count,
            awarded_bonuses=self.bonuses.count_awarded(customer_id, customer.bonus_cycle_id),
            total_bonus_amount=self.bonuses.sum_awarded(customer_id, customer.bonus_cycle_id),
            next_milestone=self.next_milestone(transfer_count),
            cycle_complete=transfer_count >= self.config.bonus_cycle_length,
            cycle_anchor_id=customer.bonus_cycle_id,
        )

    def reset_bonus_cycle(self, customer_id: str, now: Optional[datetime] = None) -> bool:
        """
        Start a new bonus cycle once the current one is complete

        Returns:
            True if a new cycle was started, False if the current cycle is
            still in progress
        """
        status = self.get_bonus_status(customer_id)
        if not status.cycle_complete:
            return False

        customer = self.customers.start_bonus_cycle(
            customer_id, utc_timestamp(now)
        )
        log_action(
            self.logger, "info", "Bonus cycle reset",
            customer_id=customer_id, action="reset_bonus_cycle",
            extra={
                "previous_cycle_id": status.cycle_anchor_id,
                "cycle_id": customer.bonus_cycle_id,
                "transfer_count": status.transfer_count,
            }
        )
        return True
