"""
Beneficiary Store Module

A beneficiary of kind `self` is a Restricted Destination Account (RDA): the
customer sending money to their own account abroad. RDA transfers are allowed
but never accrue bonuses.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from .errors import NotFoundError
from .storage import StorageInterface, StorageRecord, parse_datetime


class BeneficiaryKind(Enum):
    SELF = "self"
    BUSINESS = "business"
    OTHER = "other"


@dataclass
class Beneficiary(StorageRecord):
    customer_id: str
    kind: BeneficiaryKind
    name: str = ""

    @property
    def is_rda(self) -> bool:
        return self.kind == BeneficiaryKind.SELF

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Beneficiary':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            customer_id=data['customer_id'],
            kind=BeneficiaryKind(data['kind']),
            name=data.get('name', ""),
        )


class BeneficiaryStore:
    """Beneficiary collaborator backed by the storage interface"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "beneficiaries"

    def create_beneficiary(
        self,
        customer_id: str,
        kind: BeneficiaryKind,
        name: str = "",
        beneficiary_id: Optional[str] = None
    ) -> Beneficiary:
        now = datetime.now(timezone.utc)
        beneficiary = Beneficiary(
            id=beneficiary_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            kind=BeneficiaryKind(kind),
            name=name,
        )
        self.storage.insert(self.table, beneficiary.id, beneficiary.to_dict())
        return beneficiary

    def find_beneficiary(self, beneficiary_id: str) -> Optional[Beneficiary]:
        data = self.storage.load(self.table, beneficiary_id)
        return Beneficiary.from_dict(data) if data else None

    def get_beneficiary(self, beneficiary_id: str) -> Beneficiary:
        """Load a beneficiary, raising NotFoundError if unknown"""
        beneficiary = self.find_beneficiary(beneficiary_id)
        if beneficiary is None:
            raise NotFoundError("Beneficiary", beneficiary_id)
        return beneficiary
