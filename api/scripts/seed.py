"""Seed the database with the payment method catalogue and test staff users.

Run with: python -m scripts.seed
"""

import asyncio
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.auth import hash_password
from bookrent.core.database import async_session_factory, engine
from bookrent.models import Base, PaymentMethod, PaymentMethodType, User, UserRole

# Card fees are passed on to the client; bank transfers are free
PAYMENT_METHODS = [
    {
        "method_type": PaymentMethodType.VISA_MASTERCARD,
        "display_name": "Visa / Mastercard",
        "fee_percentage": Decimal("2.50"),
    },
    {
        "method_type": PaymentMethodType.AMEX,
        "display_name": "American Express",
        "fee_percentage": Decimal("3.50"),
    },
    {
        "method_type": PaymentMethodType.BANK_TRANSFER,
        "display_name": "Bank transfer",
        "fee_percentage": Decimal("0"),
    },
]

USERS = [
    {
        "email": "admin@kingrent.example",
        "password": "admin123",
        "first_name": "Test",
        "last_name": "Admin",
        "role": UserRole.ADMIN,
    },
    {
        "email": "staff@kingrent.example",
        "password": "staff123",
        "first_name": "Test",
        "last_name": "Staff",
        "role": UserRole.STAFF,
    },
]


async def seed_payment_methods(db: AsyncSession) -> int:
    """Insert any catalogue entries that are missing. Returns how many were added."""
    result = await db.execute(select(PaymentMethod.method_type))
    existing = set(result.scalars().all())

    added = 0
    for method_data in PAYMENT_METHODS:
        if method_data["method_type"] in existing:
            continue
        db.add(PaymentMethod(**method_data))
        added += 1
    await db.flush()
    return added


async def seed():
    # Create tables (in dev; production uses migrations)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as db:
        methods_added = await seed_payment_methods(db)

        users_added = []
        for user_data in USERS:
            result = await db.execute(select(User).where(User.email == user_data["email"]))
            if result.scalar_one_or_none():
                continue
            db.add(
                User(
                    email=user_data["email"],
                    hashed_password=hash_password(user_data["password"]),
                    first_name=user_data["first_name"],
                    last_name=user_data["last_name"],
                    role=user_data["role"],
                )
            )
            users_added.append(user_data)

        await db.commit()

        print(f"Seeded {methods_added} payment methods")
        print(f"  {len(users_added)} test users:")
        for user_data in users_added:
            print(f"    {user_data['email']} / {user_data['password']}")


if __name__ == "__main__":
    asyncio.run(seed())
