"""
Cap Enforcer Module

Decides whether a new transfer fits under the customer's rolling monthly
sending cap. Only completed transfers count towards the period total, so
concurrent in-flight transfers can together exceed the cap until settlement
reconciles; callers needing a hard guarantee must serialize cap checks per
customer at the storage boundary.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Optional

from .config import EngineConfig, resolve_config
from .currency import AmountLike, Currency, Money, require_positive, to_money
from .customers import CustomerStore
from .logging_config import get_logger, log_action
from .periods import Period, current_period
from .storage import utc_timestamp
from .transfers import TransferStore


RECORD_CURRENCY = Currency.GBP


@dataclass(frozen=True)
class CapCheckResult:
    """Outcome of a cap check; a denial is a normal result, not an error"""
    allowed: bool
    remaining: Money
    total_in_period: Money
    cap: Money
    period: Period
    exempt: bool = False
    message: Optional[str] = None


class CapEnforcer:
    """Rolling monthly sending cap"""

    def __init__(
        self,
        customers: CustomerStore,
        transfers: TransferStore,
        config: Optional[EngineConfig] = None
    ):
        self.customers = customers
        self.transfers = transfers
        self.config = resolve_config(config)
        self.logger = get_logger("remit_engine.caps")

    def period_total(self, customer_id: str, period: Period) -> Money:
        """Sum of completed transfer amounts within the period"""
        completed = self.transfers.find_completed_by_customer_in_range(
            customer_id, period.start, period.end
        )
        return Money(sum((t.amount for t in completed), Decimal("0")), RECORD_CURRENCY)

    def check_cap(
        self,
        customer_id: str,
        amount: AmountLike,
        now: Optional[datetime] = None
    ) -> CapCheckResult:
        """
        Check whether `amount` fits under the customer's cap this period

        Raises:
            InvalidAmountError: If the amount is malformed or not positive
            NotFoundError: If the customer is unknown
        """
        requested = require_positive(to_money(amount, RECORD_CURRENCY))
        customer = self.customers.get_customer(customer_id)
        now = utc_timestamp(now)

        period = current_period(customer.anchor_day, now, self.config.timezone)
        total = self.period_total(customer_id, period)
        cap = Money(customer.monthly_cap, RECORD_CURRENCY)
        remaining = max(cap - total, Money.zero(RECORD_CURRENCY))

        if customer.cap_exempt:
            return CapCheckResult(
                allowed=True,
                remaining=remaining,
                total_in_period=total,
                cap=cap,
                period=period,
                exempt=True,
            )

        allowed = total + requested <= cap
        message = None
        if not allowed:
            message = f"Monthly cap exceeded. Remaining: {remaining.to_string()}"
            log_action(
                self.logger, "info", "Transfer denied by monthly cap",
                customer_id=customer_id, action="cap_check",
                extra={
                    "requested": str(requested.amount),
                    "total_in_period": str(total.amount),
                    "cap": str(cap.amount),
                    "period_start": period.start.isoformat(),
                }
            )

        return CapCheckResult(
            allowed=allowed,
            remaining=remaining,
            total_in_period=total,
            cap=cap,
            period=period,
            message=message,
        )

    def refresh_used_limit(self, customer_id: str, now: Optional[datetime] = None) -> Money:
        """Recompute the customer's denormalized used amount for the current period"""
        customer = self.customers.get_customer(customer_id)
        period = current_period(
            customer.anchor_day, utc_timestamp(now), self.config.timezone
        )
        total = self.period_total(customer_id, period)
        self.customers.update_used_limit(customer_id, total.amount)
        return total
