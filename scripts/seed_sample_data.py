"""Seed sample cards, payment methods and reward rules for local testing.

Idempotent: skips seeding if schemes already exist.
Run: python scripts/seed_sample_data.py
"""

import sys
from decimal import Decimal
from pathlib import Path

# Ensure the project root is on sys.path so 'config' and 'db' resolve
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy.orm import Session  # noqa: E402

from db.connection import get_session, init_database  # noqa: E402
from db.models import PaymentMethods, RewardRules, Schemes, generate_uuid  # noqa: E402

SCHEMES = [
    # card_name, name, activity_start, activity_end
    ("cube", "travel", "2026-01-01", "2026-06-30"),
    ("cube", "dining", "2026-01-01", None),
    ("richart", "online", "2026-07-01", "2026-12-31"),
]

PAYMENT_METHODS = ["LINE Pay", "Apple Pay", "Street Pay"]


def seed(session: Session) -> None:
    existing = session.query(Schemes).first()
    if existing:
        print("Sample data already seeded, skipping.")
        return

    print("Seeding sample data...")

    schemes: list[Schemes] = []
    for order, (card, name, start, end) in enumerate(SCHEMES):
        s = Schemes(
            id=generate_uuid(),
            card_name=card,
            name=name,
            activity_start_date=start,
            activity_end_date=end,
            display_order=order,
        )
        session.add(s)
        schemes.append(s)

    methods: list[PaymentMethods] = []
    for order, name in enumerate(PAYMENT_METHODS):
        pm = PaymentMethods(id=generate_uuid(), name=name, display_order=order)
        session.add(pm)
        methods.append(pm)
    session.flush()

    rules = [
        # Capped 2.7% on travel, refilled on the 1st of every month
        RewardRules(
            scheme_id=schemes[0].id,
            percentage=Decimal("2.7"),
            quota_limit=Decimal(500),
            quota_refresh_type="monthly",
            quota_refresh_value=1,
        ),
        # Statement-basis dining rule, floored
        RewardRules(
            scheme_id=schemes[1].id,
            percentage=Decimal("3.3"),
            calculation_method="floor",
            quota_calculation_basis="statement",
            quota_limit=Decimal(300),
            quota_refresh_type="monthly",
            quota_refresh_value=15,
        ),
        # Promotion quota that closes when the activity ends
        RewardRules(
            scheme_id=schemes[2].id,
            percentage=Decimal(5),
            calculation_method="ceil",
            quota_limit=Decimal(1000),
            quota_refresh_type="activity",
        ),
        # Uncapped wallet bonus
        RewardRules(payment_method_id=methods[0].id, percentage=Decimal(1)),
        RewardRules(
            payment_method_id=methods[1].id,
            percentage=Decimal("0.5"),
            quota_limit=Decimal(100),
            quota_refresh_type="date",
            quota_refresh_date="2026-12-31",
        ),
    ]
    session.add_all(rules)
    session.flush()

    print(f"  {len(schemes)} schemes")
    print(f"  {len(methods)} payment methods")
    print(f"  {len(rules)} reward rules")
    print("Done.")


if __name__ == "__main__":
    init_database()
    with get_session() as session:
        seed(session)
