from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from listing_sync.config import load_settings


def resolve_pg_dsn(explicit_dsn: str | None = None) -> str:
    if explicit_dsn:
        return explicit_dsn
    return load_settings().pg_dsn


@lru_cache(maxsize=8)
def get_engine(dsn: str) -> Engine:
    return create_engine(dsn, pool_pre_ping=True)


def create_tables(engine: Engine) -> None:
    from listing_sync.models import Base

    Base.metadata.create_all(engine)
