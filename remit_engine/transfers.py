"""
Transfer Store Module

Transfer rows and the queries the cap enforcer and bonus engine depend on.
The `ref_id` uniqueness guarantee lives here: every reference ID is inserted
into a dedicated key table, so a colliding ID is rejected by storage itself
rather than by a check-then-write race.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .beneficiaries import BeneficiaryStore
from .errors import InvalidTransitionError, NotFoundError
from .storage import StorageInterface, StorageRecord, parse_datetime, utc_timestamp


class TransferStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self != TransferStatus.PENDING


@dataclass
class Transfer(StorageRecord):
    """A single money transfer attempt"""
    customer_id: str
    amount: Decimal
    ref_id: str
    status: TransferStatus = TransferStatus.PENDING
    beneficiary_id: Optional[str] = None
    amount_secondary: Optional[Decimal] = None
    failure_reason: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transfer':
        secondary = data.get('amount_secondary')
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            customer_id=data['customer_id'],
            amount=Decimal(data['amount']),
            ref_id=data['ref_id'],
            status=TransferStatus(data['status']),
            beneficiary_id=data.get('beneficiary_id'),
            amount_secondary=Decimal(secondary) if secondary is not None else None,
            failure_reason=data.get('failure_reason'),
            completed_at=parse_datetime(data.get('completed_at')),
        )


class TransferStore:
    """Transfer collaborator backed by the storage interface"""

    def __init__(self, storage: StorageInterface, beneficiaries: BeneficiaryStore):
        self.storage = storage
        self.beneficiaries = beneficiaries
        self.table = "transfers"
        self.ref_id_table = "transfer_ref_ids"

    def create(
        self,
        customer_id: str,
        amount: Decimal,
        ref_id: str,
        beneficiary_id: Optional[str] = None,
        amount_secondary: Optional[Decimal] = None,
        created_at: Optional[datetime] = None,
        transfer_id: Optional[str] = None
    ) -> Transfer:
        """
        Persist a pending transfer

        Raises:
            DuplicateKeyError: If `ref_id` is already assigned to another transfer
        """
        now = utc_timestamp(created_at)
        transfer = Transfer(
            id=transfer_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            amount=amount,
            ref_id=ref_id,
            beneficiary_id=beneficiary_id,
            amount_secondary=amount_secondary,
        )
        with self.storage.atomic():
            self.storage.insert(self.ref_id_table, ref_id, {"transfer_id": transfer.id})
            self.storage.insert(self.table, transfer.id, transfer.to_dict())
        return transfer

    def get(self, transfer_id: str) -> Transfer:
        data = self.storage.load(self.table, transfer_id)
        if not data:
            raise NotFoundError("Transfer", transfer_id)
        return Transfer.from_dict(data)

    def get_by_ref_id(self, ref_id: str) -> Transfer:
        key = self.storage.load(self.ref_id_table, ref_id)
        if not key:
            raise NotFoundError("Transfer", ref_id)
        return self.get(key['transfer_id'])

    def exists_by_ref_id(self, ref_id: str) -> bool:
        return self.storage.exists(self.ref_id_table, ref_id)

    def _completed_for_customer(self, customer_id: str) -> List[Transfer]:
        rows = self.storage.find(
            self.table,
            {"customer_id": customer_id, "status": TransferStatus.COMPLETED.value}
        )
        return [Transfer.from_dict(row) for row in rows]

    def find_completed_by_customer_in_range(
        self, customer_id: str, start: datetime, end: datetime
    ) -> List[Transfer]:
        """Completed transfers created within [start, end], both inclusive"""
        return [
            t for t in self._completed_for_customer(customer_id)
            if start <= t.created_at <= end
        ]

    def last_completed_to_beneficiary_since(
        self,
        customer_id: str,
        beneficiary_id: str,
        since: datetime,
        exclude_transfer_id: Optional[str] = None
    ) -> Optional[Transfer]:
        """Most recent completed transfer to a beneficiary created at or after `since`"""
        matches = [
            t for t in self._completed_for_customer(customer_id)
            if t.beneficiary_id == beneficiary_id
            and t.created_at >= since
            and t.id != exclude_transfer_id
        ]
        return max(matches, key=lambda t: t.created_at) if matches else None

    def count_eligible(
        self,
        customer_id: str,
        minimum_amount: Decimal,
        since: Optional[datetime] = None,
        exclude_transfer_id: Optional[str] = None
    ) -> int:
        """
        Count completed transfers that qualify towards milestone bonuses:
        amount at least `minimum_amount`, sent to a known beneficiary that is
        not the customer's own account, completed at or after `since`.
        """
        count = 0
        kinds: Dict[str, bool] = {}
        for transfer in self._completed_for_customer(customer_id):
            if transfer.id == exclude_transfer_id or transfer.amount < minimum_amount:
                continue
            if transfer.beneficiary_id is None:
                continue
            if since is not None and (transfer.completed_at or transfer.created_at) < since:
                continue
            if transfer.beneficiary_id not in kinds:
                beneficiary = self.beneficiaries.find_beneficiary(transfer.beneficiary_id)
                kinds[transfer.beneficiary_id] = beneficiary is not None and not beneficiary.is_rda
            if kinds[transfer.beneficiary_id]:
                count += 1
        return count

    def _transition(self, transfer_id: str, target: TransferStatus, action: str,
                    when: Optional[datetime] = None,
                    failure_reason: Optional[str] = None) -> Transfer:
        transfer = self.get(transfer_id)
        if transfer.status.is_terminal:
            raise InvalidTransitionError("transfer", transfer.status.value, action)

        now = utc_timestamp(when)
        transfer.status = target
        transfer.updated_at = now
        if target == TransferStatus.COMPLETED:
            transfer.completed_at = now
        if target == TransferStatus.FAILED:
            transfer.failure_reason = failure_reason or "Unknown Error"
        self.storage.save(self.table, transfer.id, transfer.to_dict())
        return transfer

    def complete(self, transfer_id: str, when: Optional[datetime] = None) -> Transfer:
        return self._transition(transfer_id, TransferStatus.COMPLETED, "complete", when)

    def fail(self, transfer_id: str, reason: str, when: Optional[datetime] = None) -> Transfer:
        return self._transition(transfer_id, TransferStatus.FAILED, "fail", when, reason)

    def cancel(self, transfer_id: str, when: Optional[datetime] = None) -> Transfer:
        return self._transition(transfer_id, TransferStatus.CANCELLED, "cancel", when)

    def refund(self, transfer_id: str, when: Optional[datetime] = None) -> Transfer:
        return self._transition(transfer_id, TransferStatus.REFUNDED, "refund", when)
