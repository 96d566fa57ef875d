#!/usr/bin/env python3
"""
Example: Cap checks, milestone bonuses and MLRO review

Walks one customer through four transfers to a family beneficiary, showing the
monthly cap decision, the 4th-transfer bonus and an audited compliance flag
review. Set REMIT_DATABASE_URL to a postgresql:// URL to run against
PostgreSQL; otherwise everything stays in memory.
"""

import os
from datetime import datetime, timedelta, timezone

from remit_engine.beneficiaries import BeneficiaryKind
from remit_engine.config import EngineConfig
from remit_engine.engine import RemittanceEngine
from remit_engine.errors import RemitEngineError, StorageError
from remit_engine.flags import FlagAction, FlagSeverity, FlagType
from remit_engine.logging_config import setup_logging
from remit_engine.storage import InMemoryStorage, PostgreSQLStorage


def main():
    print("💸 Remittance Engine - Walkthrough")
    print("=" * 60)

    # 1. Configuration
    print("\n1. 🔧 Configuration Setup")
    config = EngineConfig()
    setup_logging(config.log_level, log_format=config.log_format)
    print(f"   Monthly cap: {config.default_monthly_cap}")
    print(f"   Milestones: {config.milestone_bonuses}")

    # 2. Storage Backend Selection
    print("\n2. 💾 Storage Backend Selection")
    database_url = os.environ.get("REMIT_DATABASE_URL", "")
    try:
        if database_url.startswith("postgresql://"):
            storage = PostgreSQLStorage(database_url)
            backend_type = "PostgreSQL"
        else:
            storage = InMemoryStorage()
            backend_type = "InMemory"
    except StorageError as e:
        print(f"   Database connection failed: {e}")
        storage = InMemoryStorage()
        backend_type = "InMemory"
    print(f"   Using {backend_type} backend")

    engine = RemittanceEngine(storage=storage, config=config)

    # 3. Customer and beneficiary
    print("\n3. 👤 Customer Setup")
    start = datetime.now(timezone.utc) - timedelta(days=7)
    customer = engine.customers.create_customer("Ayesha Khan", signed_up_at=start - timedelta(days=40))
    family = engine.beneficiaries.create_beneficiary(customer.id, BeneficiaryKind.OTHER, "Bilal Khan")
    print(f"   Customer {customer.id} anchored on day {customer.anchor_day}")

    # 4. Transfers
    print("\n4. 💳 Transfers")
    try:
        for i in range(4):
            when = start + timedelta(days=i * 2)
            submission = engine.submit_transfer(customer.id, "150", family.id, now=when)
            if not submission.accepted:
                print(f"   ❌ {submission.cap.message}")
                continue

            settlement = engine.settle_transfer(submission.transfer.id, when + timedelta(minutes=5))
            line = f"   ✅ Transfer {submission.transfer.ref_id} settled"
            if settlement.bonus:
                line += f" - bonus {settlement.bonus.money.to_string()}"
            print(line)
    except RemitEngineError as e:
        print(f"   ❌ Transfer failed: {e}")

    status = engine.get_bonus_status(customer.id)
    print(f"   Eligible transfers this cycle: {status.transfer_count}")
    if status.next_milestone:
        print(f"   Next bonus in {status.next_milestone.remaining} transfers")

    # 5. Compliance review
    print("\n5. 🚩 MLRO Review")
    flag = engine.create_flag(
        customer.id, FlagType.SUSPICIOUS_ACTIVITY, FlagSeverity.HIGH,
        title="Rapid repeat transfers"
    )
    engine.transition(flag.id, FlagAction.HOLD, actor_id="mlro-1")
    sla = engine.get_sla_status(flag.id)
    print(f"   Flag on hold, {sla.remaining_hours}h left (deadline {sla.deadline.isoformat()})")
    engine.transition(flag.id, FlagAction.APPROVE, "Family support, documents on file", actor_id="mlro-1")
    print(f"   Audit chain valid: {engine.audit_trail.verify_integrity()['valid']}")

    # 6. Cleanup
    print("\n6. 🧹 Cleanup")
    storage.close()
    print("   ✅ Storage connection closed")
    print("=" * 60)


if __name__ == "__main__":
    main()
