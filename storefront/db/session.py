from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront.config import settings
from storefront.db.base import Base


def build_engine(database_url: str) -> Engine:
    is_sqlite = database_url.startswith("sqlite")
    is_sqlite_memory = is_sqlite and ":memory:" in database_url

    engine_kwargs: dict = {"pool_pre_ping": True}

    if is_sqlite:
        engine_kwargs["connect_args"] = {"check_same_thread": False}

        # Required so in-memory SQLite works across sessions and threads
        if is_sqlite_memory:
            engine_kwargs["poolclass"] = StaticPool

    return create_engine(database_url, **engine_kwargs)


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def init_db(bind: Engine | None = None) -> None:
    import storefront.models  # noqa: F401 (register all SQLAlchemy models)

    Base.metadata.create_all(bind=bind or engine)
