"""
Remittance Engine

Wires the cap enforcer, bonus eligibility engine, reference ID generator and
compliance flag machine over one storage backend, and exposes the operations
the admin API layer calls. This is the layer that writes audit records after
flag transitions and bonus cycle resets.
"""

from datetime import datetime
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from .audit import AuditAction, AuditTrail
from .beneficiaries import BeneficiaryStore
from .bonuses import Bonus, BonusStore, MilestoneTier
from .caps import RECORD_CURRENCY, CapCheckResult, CapEnforcer
from .config import EngineConfig, resolve_config
from .currency import AmountLike, require_positive, to_money
from .customers import CustomerStore
from .errors import DuplicateKeyError
from .flags import (
    ComplianceFlag, ComplianceFlagMachine, FlagAction, FlagSeverity, FlagStatus,
    FlagStore, FlagType, SlaStatus, TransitionOutcome
)
from .incentives import BonusEligibilityEngine, BonusStatus, EligibilityResult
from .logging_config import get_logger, log_action
from .refids import ReferenceIdGenerator
from .storage import StorageInterface, create_storage, utc_timestamp
from .transfers import Transfer, TransferStore


FLAG_AUDIT_ACTIONS = {
    FlagAction.APPROVE: AuditAction.APPROVE_MLRO,
    FlagAction.REJECT: AuditAction.REJECT_MLRO,
    FlagAction.HOLD: AuditAction.HOLD_MLRO,
}


@dataclass(frozen=True)
class SubmissionResult:
    """Cap decision plus the pending transfer when the cap allowed it"""
    cap: CapCheckResult
    transfer: Optional[Transfer] = None

    @property
    def accepted(self) -> bool:
        return self.transfer is not None


@dataclass(frozen=True)
class SettlementResult:
    transfer: Transfer
    eligibility: Optional[EligibilityResult] = None
    bonus: Optional[Bonus] = None


class RemittanceEngine:
    """Transfer compliance and incentive engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[EngineConfig] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.config = resolve_config(config)
        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = audit_trail or AuditTrail(self.storage)

        self.customers = CustomerStore(self.storage, self.config)
        self.beneficiaries = BeneficiaryStore(self.storage)
        self.transfers = TransferStore(self.storage, self.beneficiaries)
        self.bonuses = BonusStore(self.storage)
        self.flags = FlagStore(self.storage)

        self.cap_enforcer = CapEnforcer(self.customers, self.transfers, self.config)
        self.bonus_engine = BonusEligibilityEngine(
            self.customers, self.beneficiaries, self.transfers, self.bonuses, self.config
        )
        self.ref_id_generator = ReferenceIdGenerator(self.transfers.exists_by_ref_id, self.config)
        self.flag_machine = ComplianceFlagMachine(self.flags, self.config)
        self.logger = get_logger("remit_engine.engine")

    # Caps and bonuses

    def check_cap(self, customer_id: str, amount: AmountLike,
                  now: Optional[datetime] = None) -> CapCheckResult:
        return self.cap_enforcer.check_cap(customer_id, amount, now)

    def check_eligibility(self, customer_id: str, beneficiary_id: str, amount: AmountLike,
                          now: Optional[datetime] = None) -> EligibilityResult:
        return self.bonus_engine.check_eligibility(customer_id, beneficiary_id, amount, now)

    def award_bonus(self, customer_id: str, bonus_amount: AmountLike, transfer_id: str,
                    milestone_tier: Optional[MilestoneTier] = None,
                    now: Optional[datetime] = None) -> Bonus:
        return self.bonus_engine.award_bonus(
            customer_id, bonus_amount, transfer_id, milestone_tier, now
        )

    def get_bonus_status(self, customer_id: str) -> BonusStatus:
        return self.bonus_engine.get_bonus_status(customer_id)

    def reset_bonus_cycle(self, customer_id: str, actor_id: Optional[str] = None,
                          now: Optional[datetime] = None) -> bool:
        """Start a new bonus cycle if the current one is complete, auditing the reset"""
        before = self.customers.get_customer(customer_id)
        if not self.bonus_engine.reset_bonus_cycle(customer_id, now):
            return False

        after = self.customers.get_customer(customer_id)
        self.audit_trail.record(
            AuditAction.RESET_BONUS_CYCLE,
            "CUSTOMER",
            actor_id,
            before={"bonus_cycle_id": before.bonus_cycle_id},
            after={"bonus_cycle_id": after.bonus_cycle_id},
            resource_id=customer_id,
        )
        return True

    # Transfers

    def generate_ref_id(self) -> str:
        return self.ref_id_generator.generate()

    def submit_transfer(
        self,
        customer_id: str,
        amount: AmountLike,
        beneficiary_id: Optional[str] = None,
        amount_secondary: Optional[Decimal] = None,
        now: Optional[datetime] = None
    ) -> SubmissionResult:
        """
        Check the cap and, if allowed, persist a pending transfer

        A reference ID taken by a concurrent insert is replaced with a fresh
        one, up to `ref_id_insert_retries` times.

        Raises:
            InvalidAmountError: If the amount is malformed or not positive
            NotFoundError: If the customer or beneficiary is unknown
            DuplicateKeyError: If every retry collided
        """
        requested = require_positive(to_money(amount, RECORD_CURRENCY))
        now = utc_timestamp(now)
        if beneficiary_id is not None:
            self.beneficiaries.get_beneficiary(beneficiary_id)

        cap = self.cap_enforcer.check_cap(customer_id, requested, now)
        if not cap.allowed:
            return SubmissionResult(cap=cap)

        retries = self.config.ref_id_insert_retries
        for attempt in range(retries + 1):
            ref_id = self.generate_ref_id()
            try:
                transfer = self.transfers.create(
                    customer_id=customer_id,
                    amount=requested.amount,
                    ref_id=ref_id,
                    beneficiary_id=beneficiary_id,
                    amount_secondary=amount_secondary,
                    created_at=now,
                )
            except DuplicateKeyError:
                if attempt == retries:
                    raise
                log_action(
                    self.logger, "warning", "Reference ID taken on insert, retrying",
                    customer_id=customer_id, action="submit_transfer",
                    extra={"attempt": attempt + 1, "max_retries": retries}
                )
                continue
            return SubmissionResult(cap=cap, transfer=transfer)

    def settle_transfer(self, transfer_id: str,
                        now: Optional[datetime] = None) -> SettlementResult:
        """
        Complete a pending transfer and award any milestone bonus it earns

        Eligibility is evaluated after completion with the transfer itself
        excluded from the count and the cooldown lookup.
        """
        now = utc_timestamp(now)
        transfer = self.transfers.complete(transfer_id, now)
        self.cap_enforcer.refresh_used_limit(transfer.customer_id, now)

        if transfer.beneficiary_id is None:
            return SettlementResult(transfer=transfer)

        eligibility = self.bonus_engine.check_eligibility(
            transfer.customer_id,
            transfer.beneficiary_id,
            transfer.amount,
            now,
            exclude_transfer_id=transfer.id,
        )
        bonus = None
        if eligibility.eligible:
            bonus = self.bonus_engine.award_bonus(
                transfer.customer_id,
                eligibility.bonus_amount,
                transfer.id,
                eligibility.milestone_tier,
                now,
            )
        return SettlementResult(transfer=transfer, eligibility=eligibility, bonus=bonus)

    # Compliance flags

    def create_flag(self, customer_id: str, flag_type: FlagType, severity: FlagSeverity,
                    title: str = "", description: str = "",
                    transfer_id: Optional[str] = None,
                    created_at: Optional[datetime] = None) -> ComplianceFlag:
        return self.flags.create_flag(
            customer_id, flag_type, severity, title, description, transfer_id, created_at
        )

    def list_flags(self, status: Optional[FlagStatus] = None,
                   severity: Optional[FlagSeverity] = None,
                   flag_type: Optional[FlagType] = None) -> List[ComplianceFlag]:
        return self.flags.list_flags(status=status, severity=severity, flag_type=flag_type)

    def breached_flags(self, now: Optional[datetime] = None) -> List[ComplianceFlag]:
        return self.flag_machine.breached_flags(now)

    def get_sla_status(self, flag_id: str, now: Optional[datetime] = None) -> SlaStatus:
        return self.flag_machine.get_sla_status(flag_id, now)

    def transition(
        self,
        flag_id: str,
        action: FlagAction,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """Apply a review action to a flag and record it in the audit trail"""
        outcome = self.flag_machine.transition(flag_id, action, notes, now)
        self.audit_trail.record(
            FLAG_AUDIT_ACTIONS[outcome.action],
            "MLRO_FLAG",
            actor_id,
            before=outcome.before.to_dict(),
            after=outcome.after.to_dict(),
            resource_id=flag_id,
            metadata={
                "notes": outcome.after.notes,
                "customer_id": outcome.after.customer_id,
            },
        )
        return outcome
