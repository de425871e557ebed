"""Store handle: one SQLAlchemy engine + session factory per pipeline run."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import ConfigurationError
from .tables import Base

log = logging.getLogger(__name__)


def normalize_url(url: str) -> str:
    """Point bare ``postgres://`` / ``postgresql://`` URLs at psycopg 3."""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    try:
        parsed = make_url(url)
    except ArgumentError as exc:
        raise ConfigurationError(f"Invalid store URL: {exc}") from exc
    if parsed.drivername == "postgresql":
        parsed = parsed.set(drivername="postgresql+psycopg")
    return parsed.render_as_string(hide_password=False)


def libpq_url(url: str) -> str:
    """Driver-free form of *url* for libpq tools such as ``pg_dump``."""
    parsed = make_url(normalize_url(url))
    return parsed.set(drivername="postgresql").render_as_string(hide_password=False)


def _engine_options(url: str, pool_size: int, statement_timeout: float) -> dict[str, Any]:
    parsed = make_url(url)
    backend = parsed.get_backend_name()
    if backend == "sqlite":
        if parsed.database in (None, "", ":memory:"):
            return {
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            }
        connect_args: dict[str, Any] = {
            "check_same_thread": False,
            "timeout": statement_timeout,
        }
    elif backend == "postgresql":
        connect_args = {
            "options": f"-c statement_timeout={int(statement_timeout * 1000)}",
            "connect_timeout": max(1, int(statement_timeout)),
        }
    else:
        connect_args = {}

    # Every upload worker holds at most one connection; never open more.
    return {
        "pool_size": pool_size,
        "max_overflow": 0,
        "pool_timeout": statement_timeout,
        "pool_pre_ping": True,
        "connect_args": connect_args,
    }


class Store:
    """Explicit store resource, created once and disposed once per run."""

    def __init__(
        self,
        url: str,
        *,
        pool_size: int = 2,
        statement_timeout: float = 30.0,
        echo: bool = False,
    ) -> None:
        if pool_size < 1:
            raise ConfigurationError(f"pool_size must be >= 1, got {pool_size}")
        url = normalize_url(url)
        self.url = url
        self.pool_size = pool_size
        self.engine = create_engine(
            url,
            echo=echo,
            **_engine_options(url, pool_size, statement_timeout),
        )
        self.session_factory = sessionmaker(self.engine, expire_on_commit=False)
        log.info(
            "Store opened: %s (pool_size=%s, statement_timeout=%ss)",
            self.describe(),
            pool_size,
            statement_timeout,
        )

    def describe(self) -> str:
        return make_url(self.url).render_as_string(hide_password=True)

    def create_schema(self) -> None:
        """Create ``documents`` and ``pages`` if missing."""
        Base.metadata.create_all(self.engine)
        log.info("Store schema created/checked")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session; roll back on error and always close it."""
        session = self.session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
        log.info("Store engine disposed")

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.dispose()
