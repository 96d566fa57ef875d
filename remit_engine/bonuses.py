"""
Bonus Store Module

Milestone bonuses awarded against qualifying transfers. At most one bonus
exists per transfer: the transfer ID is inserted into a key table alongside
the bonus, so a second award for the same transfer is rejected by storage.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .currency import Currency, Money
from .errors import NotFoundError
from .storage import StorageInterface, StorageRecord, parse_datetime, utc_timestamp


BONUS_CURRENCY = Currency.PKR


class MilestoneTier(Enum):
    """Persisted milestone tiers; the transfer number a bonus was earned on"""
    FIRST = 1
    SECOND = 2
    THIRD = 3
    FOURTH = 4
    EIGHTH = 8
    TWELFTH = 12


@dataclass
class Bonus(StorageRecord):
    customer_id: str
    transfer_id: str
    amount: Decimal
    milestone_tier: MilestoneTier
    awarded_at: datetime
    expires_at: datetime
    cycle_anchor_id: str
    used_at: Optional[datetime] = None

    @property
    def money(self) -> Money:
        return Money(self.amount, BONUS_CURRENCY)

    def is_available(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Bonus':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            customer_id=data['customer_id'],
            transfer_id=data['transfer_id'],
            amount=Decimal(data['amount']),
            milestone_tier=MilestoneTier(data['milestone_tier']),
            awarded_at=parse_datetime(data['awarded_at']),
            expires_at=parse_datetime(data['expires_at']),
            cycle_anchor_id=data['cycle_anchor_id'],
            used_at=parse_datetime(data.get('used_at')),
        )


class BonusStore:
    """Bonus collaborator backed by the storage interface"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "bonuses"
        self.transfer_key_table = "bonus_transfer_ids"

    def create_bonus(
        self,
        customer_id: str,
        transfer_id: str,
        amount: Decimal,
        milestone_tier: MilestoneTier,
        awarded_at: datetime,
        expires_at: datetime,
        cycle_anchor_id: str
    ) -> Bonus:
        """
        Persist a bonus

        Raises:
            DuplicateKeyError: If the transfer already carries a bonus
        """
        bonus = Bonus(
            id=str(uuid.uuid4()),
            created_at=awarded_at,
            updated_at=awarded_at,
            customer_id=customer_id,
            transfer_id=transfer_id,
            amount=Decimal(amount),
            milestone_tier=milestone_tier,
            awarded_at=awarded_at,
            expires_at=expires_at,
            cycle_anchor_id=cycle_anchor_id,
        )
        with self.storage.atomic():
            self.storage.insert(self.transfer_key_table, transfer_id, {"bonus_id": bonus.id})
            self.storage.insert(self.table, bonus.id, bonus.to_dict())
        return bonus

    def for_customer(self, customer_id: str) -> List[Bonus]:
        rows = self.storage.find(self.table, {"customer_id": customer_id})
        bonuses = [Bonus.from_dict(row) for row in rows]
        bonuses.sort(key=lambda b: b.awarded_at)
        return bonuses

    def find_by_transfer(self, transfer_id: str) -> Optional[Bonus]:
        key = self.storage.load(self.transfer_key_table, transfer_id)
        if not key:
            return None
        data = self.storage.load(self.table, key['bonus_id'])
        return Bonus.from_dict(data) if data else None

    def sum_awarded(self, customer_id: str, cycle_anchor_id: Optional[str] = None) -> Money:
        total = sum(
            (b.amount for b in self.for_customer(customer_id)
             if cycle_anchor_id is None or b.cycle_anchor_id == cycle_anchor_id),
            Decimal("0")
        )
        return Money(total, BONUS_CURRENCY)

    def count_awarded(self, customer_id: str, cycle_anchor_id: Optional[str] = None) -> int:
        return sum(
            1 for b in self.for_customer(customer_id)
            if cycle_anchor_id is None or b.cycle_anchor_id == cycle_anchor_id
        )

    def available_bonuses(self, customer_id: str, now: Optional[datetime] = None) -> List[Bonus]:
        """Unused, unexpired bonuses, oldest first"""
        now = utc_timestamp(now)
        return [b for b in self.for_customer(customer_id) if b.is_available(now)]

    def get(self, bonus_id: str) -> Bonus:
        data = self.storage.load(self.table, bonus_id)
        if not data:
            raise NotFoundError("Bonus", bonus_id)
        return Bonus.from_dict(data)

    def mark_used(self, bonus_id: str, when: Optional[datetime] = None) -> Bonus:
        """Redeem a bonus; redeeming twice keeps the first redemption time"""
        bonus = self.get(bonus_id)
        if bonus.used_at is None:
            bonus.used_at = utc_timestamp(when)
            bonus.updated_at = bonus.used_at
            self.storage.save(self.table, bonus.id, bonus.to_dict())
        return bonus
