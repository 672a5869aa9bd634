from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from salon_referrals.core.settings import settings

engine = create_async_engine(settings.database_url, future=True, pool_pre_ping=True)

# Stores commit after every flag transition, so objects stay readable after commit.
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
