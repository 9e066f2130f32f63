"""Database bootstrap helpers shared by the ledger, queue and workers."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from arledger.common.logging import logger


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


class Database:
    """Owns one SQLAlchemy engine and its session factory.

    Constructed explicitly by the composition root and passed into services;
    `connect()` must be called before `session_factory` is used.
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.echo = echo
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("database is not connected")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("database is not connected")
        return self._session_factory

    @property
    def connected(self) -> bool:
        return self._engine is not None

    def connect(self) -> "Database":
        if self._engine is not None:
            return self
        kwargs = {"echo": self.echo, "pool_pre_ping": True}
        if self.url.startswith("sqlite") and ":memory:" in self.url:
            # One shared connection so every session sees the same in-memory database.
            kwargs["connect_args"] = {"check_same_thread": False}
            kwargs["poolclass"] = StaticPool
        self._engine = create_engine(self.url, **kwargs)
        # `expire_on_commit=False` keeps ORM objects readable after commit in workers.
        self._session_factory = sessionmaker(
            bind=self._engine, autoflush=False, autocommit=False, expire_on_commit=False
        )
        logger.info("database_connected dialect=%s", self._engine.dialect.name)
        return self

    def create_schema(self) -> None:
        """Create all tables directly (tests and local development only)."""

        # Model modules register their tables on `Base.metadata` when imported.
        from arledger.services.ledger import models as _ledger_models  # noqa: F401
        from arledger.services.notification import models as _notification_models  # noqa: F401

        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("database_closed")
        self._engine = None
        self._session_factory = None
