"""
Customer Store Module

Read-side view of the account system's customers: the sending cap, the anchor
day the cap period rolls over on, the denormalized amount used in the current
cycle, and the bonus cycle the customer is currently counting towards.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Optional
import uuid

from .config import EngineConfig, resolve_config
from .errors import NotFoundError
from .periods import anchor_day_from_signup
from .storage import StorageInterface, StorageRecord, parse_datetime, utc_timestamp


@dataclass
class Customer(StorageRecord):
    """Customer cap and bonus-cycle profile"""
    full_name: str
    monthly_cap: Decimal
    anchor_day: int
    used_limit: Decimal = Decimal("0")
    # Unlimited plan or verified residency proof
    cap_exempt: bool = False
    bonus_cycle_id: str = ""
    bonus_cycle_started_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.monthly_cap, Decimal):
            self.monthly_cap = Decimal(str(self.monthly_cap))
        if not isinstance(self.used_limit, Decimal):
            self.used_limit = Decimal(str(self.used_limit))
        if self.monthly_cap < Decimal("0"):
            raise ValueError("Monthly cap cannot be negative")
        if not 1 <= self.anchor_day <= 31:
            raise ValueError("Anchor day must be between 1 and 31")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            full_name=data['full_name'],
            monthly_cap=Decimal(data['monthly_cap']),
            anchor_day=int(data['anchor_day']),
            used_limit=Decimal(data.get('used_limit', "0")),
            cap_exempt=bool(data.get('cap_exempt', False)),
            bonus_cycle_id=data.get('bonus_cycle_id', ""),
            bonus_cycle_started_at=parse_datetime(data.get('bonus_cycle_started_at')),
        )


class CustomerStore:
    """Customer collaborator backed by the storage interface"""

    def __init__(self, storage: StorageInterface, config: Optional[EngineConfig] = None):
        self.storage = storage
        self.config = resolve_config(config)
        self.table = "customers"

    def create_customer(
        self,
        full_name: str,
        customer_id: Optional[str] = None,
        monthly_cap: Optional[Decimal] = None,
        anchor_day: Optional[int] = None,
        signed_up_at: Optional[datetime] = None,
        cap_exempt: bool = False
    ) -> Customer:
        """
        Register a customer profile

        The anchor day defaults to the signup day (clamped to the configured
        maximum) when a signup time is given, otherwise to the configured default.
        """
        now = utc_timestamp(signed_up_at)
        if anchor_day is None:
            if signed_up_at is not None:
                anchor_day = anchor_day_from_signup(
                    now, self.config.timezone, self.config.max_signup_anchor_day
                )
            else:
                anchor_day = self.config.default_anchor_day

        customer = Customer(
            id=customer_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            full_name=full_name,
            monthly_cap=monthly_cap if monthly_cap is not None else self.config.default_monthly_cap,
            anchor_day=anchor_day,
            cap_exempt=cap_exempt,
            bonus_cycle_id=str(uuid.uuid4()),
            bonus_cycle_started_at=None,
        )
        self.storage.insert(self.table, customer.id, customer.to_dict())
        return customer

    def get_customer(self, customer_id: str) -> Customer:
        """Load a customer, raising NotFoundError if unknown"""
        data = self.storage.load(self.table, customer_id)
        if not data:
            raise NotFoundError("Customer", customer_id)
        return Customer.from_dict(data)

    def save(self, customer: Customer) -> Customer:
        customer.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table, customer.id, customer.to_dict())
        return customer

    def update_used_limit(self, customer_id: str, used_limit: Decimal) -> Customer:
        customer = self.get_customer(customer_id)
        customer.used_limit = used_limit
        return self.save(customer)

    def start_bonus_cycle(self, customer_id: str, started_at: datetime) -> Customer:
        """Begin a new bonus cycle; transfers completed before `started_at` stop counting"""
        customer = self.get_customer(customer_id)
        customer.bonus_cycle_id = str(uuid.uuid4())
        customer.bonus_cycle_started_at = started_at
        return self.save(customer)
