"""
Compliance Flag Module

MLRO review flags raised against customers or transfers. A flag moves from
pending to approved or rejected, optionally via hold, under a review deadline
derived from its severity. SLA state is computed on every read; a deadline is
data, not a timer.

The state machine does not write audit records. Each transition returns the
before/after snapshots so the calling layer can record them.
"""

from datetime import datetime, timedelta
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .config import SEVERITY_ORDER, EngineConfig, resolve_config
from .errors import InvalidTransitionError, NotFoundError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_datetime, utc_timestamp


DEFAULT_HOLD_NOTES = "Placed on hold for further investigation"


class FlagType(Enum):
    KYC_ISSUE = "kyc_issue"
    AML_FLAG = "aml_flag"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


class FlagSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def urgency(self) -> int:
        """0 for the most urgent severity"""
        return SEVERITY_ORDER.index(self.value)


class FlagStatus(Enum):
    PENDING = "pending"
    HOLD = "hold"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (FlagStatus.APPROVED, FlagStatus.REJECTED)


class FlagAction(Enum):
    APPROVE = "approve"
    REJECT = "reject"
    HOLD = "hold"


# (current status, action) -> next status
TRANSITIONS = {
    (FlagStatus.PENDING, FlagAction.APPROVE): FlagStatus.APPROVED,
    (FlagStatus.PENDING, FlagAction.REJECT): FlagStatus.REJECTED,
    (FlagStatus.PENDING, FlagAction.HOLD): FlagStatus.HOLD,
    (FlagStatus.HOLD, FlagAction.APPROVE): FlagStatus.APPROVED,
    (FlagStatus.HOLD, FlagAction.REJECT): FlagStatus.REJECTED,
    (FlagStatus.HOLD, FlagAction.HOLD): FlagStatus.HOLD,
}


@dataclass
class ComplianceFlag(StorageRecord):
    """MLRO review flag"""
    customer_id: str
    flag_type: FlagType
    severity: FlagSeverity
    status: FlagStatus = FlagStatus.PENDING
    title: str = ""
    description: str = ""
    transfer_id: Optional[str] = None
    notes: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ComplianceFlag':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            customer_id=data['customer_id'],
            flag_type=FlagType(data['flag_type']),
            severity=FlagSeverity(data['severity']),
            status=FlagStatus(data['status']),
            title=data.get('title', ""),
            description=data.get('description', ""),
            transfer_id=data.get('transfer_id'),
            notes=data.get('notes'),
            resolved_at=parse_datetime(data.get('resolved_at')),
        )


@dataclass(frozen=True)
class SlaStatus:
    """Review deadline state; remaining/breached are None once the flag is resolved"""
    flag_id: str
    status: FlagStatus
    deadline: datetime
    remaining_hours: Optional[int]
    breached: Optional[bool]


@dataclass(frozen=True)
class TransitionOutcome:
    action: FlagAction
    before: ComplianceFlag
    after: ComplianceFlag


class FlagStore:
    """Flag persistence; flags are never deleted"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "compliance_flags"

    def create_flag(
        self,
        customer_id: str,
        flag_type: FlagType,
        severity: FlagSeverity,
        title: str = "",
        description: str = "",
        transfer_id: Optional[str] = None,
        created_at: Optional[datetime] = None
    ) -> ComplianceFlag:
        now = utc_timestamp(created_at)
        flag = ComplianceFlag(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            flag_type=FlagType(flag_type),
            severity=FlagSeverity(severity),
            title=title,
            description=description,
            transfer_id=transfer_id,
        )
        self.storage.insert(self.table, flag.id, flag.to_dict())
        return flag

    def get_flag(self, flag_id: str) -> ComplianceFlag:
        data = self.storage.load(self.table, flag_id)
        if not data:
            raise NotFoundError("Flag", flag_id)
        return ComplianceFlag.from_dict(data)

    def save(self, flag: ComplianceFlag) -> ComplianceFlag:
        self.storage.save(self.table, flag.id, flag.to_dict())
        return flag

    def list_flags(
        self,
        status: Optional[FlagStatus] = None,
        severity: Optional[FlagSeverity] = None,
        flag_type: Optional[FlagType] = None,
        customer_id: Optional[str] = None
    ) -> List[ComplianceFlag]:
        """Flags matching the filters, most urgent first then oldest first"""
        criteria = {}
        if status:
            criteria['status'] = FlagStatus(status).value
        if severity:
            criteria['severity'] = FlagSeverity(severity).value
        if flag_type:
            criteria['flag_type'] = FlagType(flag_type).value
        if customer_id:
            criteria['customer_id'] = customer_id

        rows = self.storage.find(self.table, criteria) if criteria else self.storage.load_all(self.table)
        flags = [ComplianceFlag.from_dict(row) for row in rows]
        flags.sort(key=lambda f: (f.severity.urgency, f.created_at))
        return flags


class ComplianceFlagMachine:
    """Transition table and SLA computation for MLRO flags"""

    def __init__(self, flags: FlagStore, config: Optional[EngineConfig] = None):
        self.flags = flags
        self.config = resolve_config(config)
        self.logger = get_logger("remit_engine.flags")

    def sla_deadline(self, flag: ComplianceFlag) -> datetime:
        hours = self.config.sla_window_hours(flag.severity.value)
        return flag.created_at + timedelta(hours=hours)

    def sla_status(self, flag: ComplianceFlag, now: Optional[datetime] = None) -> SlaStatus:
        deadline = self.sla_deadline(flag)
        if flag.status.is_terminal:
            return SlaStatus(flag.id, flag.status, deadline, None, None)

        now = utc_timestamp(now)
        remaining = max(timedelta(0), deadline - now)
        return SlaStatus(
            flag_id=flag.id,
            status=flag.status,
            deadline=deadline,
            remaining_hours=int(remaining.total_seconds() // 3600),
            breached=now > deadline,
        )

    def get_sla_status(self, flag_id: str, now: Optional[datetime] = None) -> SlaStatus:
        """
        Raises:
            NotFoundError: If the flag is unknown
        """
        return self.sla_status(self.flags.get_flag(flag_id), now)

    def breached_flags(self, now: Optional[datetime] = None) -> List[ComplianceFlag]:
        """Open flags past their review deadline"""
        now = utc_timestamp(now)
        return [
            flag for flag in self.flags.list_flags()
            if not flag.status.is_terminal and now > self.sla_deadline(flag)
        ]

    def transition(
        self,
        flag_id: str,
        action: FlagAction,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """
        Apply a review action to a flag

        Holding an already held flag is allowed; it replaces the notes and
        leaves the deadline unchanged, since the deadline derives from the
        flag's creation time. Approving or rejecting without notes keeps the
        notes already on the flag.

        Raises:
            NotFoundError: If the flag is unknown
            InvalidTransitionError: If the action is not allowed from the
                flag's current status
        """
        flag = self.flags.get_flag(flag_id)
        try:
            action = FlagAction(action)
        except ValueError:
            raise InvalidTransitionError("flag", flag.status.value, str(action)) from None
        target = TRANSITIONS.get((flag.status, action))
        if target is None:
            raise InvalidTransitionError("flag", flag.status.value, action.value)

        before = ComplianceFlag.from_dict(flag.to_dict())
        now = utc_timestamp(now)
        if action == FlagAction.HOLD and not notes:
            notes = DEFAULT_HOLD_NOTES

        flag.status = target
        if notes is not None:
            flag.notes = notes
        flag.updated_at = now
        if target.is_terminal:
            flag.resolved_at = now
        self.flags.save(flag)

        log_action(
            self.logger, "info", f"Flag {action.value} applied",
            customer_id=flag.customer_id, action=f"{action.value}_flag", resource="flag",
            extra={
                "flag_id": flag.id,
                "from_status": before.status.value,
                "to_status": target.value,
            }
        )
        return TransitionOutcome(action=action, before=before, after=flag)
