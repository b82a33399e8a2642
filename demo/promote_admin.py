#!/usr/bin/env python3
"""Promote an existing member to ADMIN. Admins are provisioned by an operator, never self-service.

Usage:
    python demo/promote_admin.py ops@fiestapp.example
"""
import argparse
import asyncio

from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from fiesta_escrow.config import settings
from fiesta_escrow.models.user import User, UserType


async def promote(email: str) -> int:
    engine = create_async_engine(settings.DATABASE_URL)
    sf = async_sessionmaker(engine, class_=AsyncSession)
    async with sf() as s:
        r = await s.execute(
            update(User)
            .where(User.email == email)
            .values(user_type=UserType.ADMIN)
        )
        await s.commit()
    await engine.dispose()
    return r.rowcount


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("email")
    args = parser.parse_args()
    print(f"Rows updated: {asyncio.run(promote(args.email))}")
