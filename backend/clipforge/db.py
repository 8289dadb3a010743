from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .settings import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """Base declarative class for SQLAlchemy models."""


def make_engine(url: str | None = None):
    url = url or settings.async_database_url
    kwargs = {"future": True, "echo": False}
    if url.startswith("sqlite"):
        # sqlite needs a longer lock wait when several sessions write at once
        kwargs["connect_args"] = {"timeout": 30}
    return create_async_engine(url, **kwargs)


engine = make_engine()
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session
