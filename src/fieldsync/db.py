"""asyncpg pool for the sync tables.

Connection details come from ``DATABASE_URL`` or the ``POSTGRES_*``
variables; pool sizing comes from ``[fieldsync.db]``. Every connection runs
with ``timezone=UTC`` so ``timestamptz`` values round-trip as aware UTC
datetimes.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

logger = logging.getLogger(__name__)

SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})
APPLICATION_NAME = "fieldsync"


def _sslmode(value: str | None) -> str | None:
    mode = (value or "").strip().lower()
    if not mode:
        return None
    if mode not in SSL_MODES:
        logger.warning("Ignoring unknown sslmode %r", value)
        return None
    return mode


@dataclass(frozen=True)
class ConnectionParams:
    host: str = "localhost"
    port: int = 5432
    user: str = "fieldsync"
    password: str = "fieldsync"
    database: str = "fieldsync"
    sslmode: str | None = None

    @classmethod
    def from_url(cls, url: str, default_database: str = "fieldsync") -> ConnectionParams:
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        return cls(
            host=parsed.hostname or cls.host,
            port=parsed.port or cls.port,
            user=parsed.username or cls.user,
            password=parsed.password or cls.password,
            database=parsed.path.lstrip("/") or default_database,
            sslmode=_sslmode(query.get("sslmode", [None])[0]),
        )

    @classmethod
    def from_env(cls, default_database: str = "fieldsync") -> ConnectionParams:
        url = os.environ.get("DATABASE_URL")
        if url:
            return cls.from_url(url, default_database)
        return cls(
            host=os.environ.get("POSTGRES_HOST", cls.host),
            port=int(os.environ.get("POSTGRES_PORT", cls.port)),
            user=os.environ.get("POSTGRES_USER", cls.user),
            password=os.environ.get("POSTGRES_PASSWORD", cls.password),
            database=os.environ.get("POSTGRES_DB", default_database),
            sslmode=_sslmode(os.environ.get("POSTGRES_SSLMODE")),
        )

    @property
    def dsn(self) -> str:
        """libpq URL for alembic and the LISTEN connection."""
        auth = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}"
        dsn = f"postgresql://{auth}@{self.host}:{self.port}/{self.database}"
        return f"{dsn}?sslmode={self.sslmode}" if self.sslmode else dsn


def _lost_during_ssl_upgrade(exc: BaseException, params: ConnectionParams) -> bool:
    # asyncpg's default sslmode tries STARTTLS first; some proxies drop the
    # connection instead of refusing it.
    return (
        params.sslmode is None
        and isinstance(exc, ConnectionError)
        and "unexpected connection_lost() call" in str(exc)
    )


class Database:
    """Owns the asyncpg pool shared by the store, the API and the jobs."""

    def __init__(
        self,
        params: ConnectionParams,
        *,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.params = params
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(
        cls,
        default_database: str = "fieldsync",
        *,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> Database:
        return cls(
            ConnectionParams.from_env(default_database),
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )

    @property
    def dsn(self) -> str:
        return self.params.dsn

    async def _create_pool(self, params: ConnectionParams) -> asyncpg.Pool:
        return await asyncpg.create_pool(
            host=params.host,
            port=params.port,
            user=params.user,
            password=params.password,
            database=params.database,
            ssl=params.sslmode,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            server_settings={"timezone": "UTC", "application_name": APPLICATION_NAME},
        )

    async def connect(self) -> asyncpg.Pool:
        try:
            self.pool = await self._create_pool(self.params)
        except ConnectionError as exc:
            if not _lost_during_ssl_upgrade(exc, self.params):
                raise
            logger.info(
                "SSL upgrade dropped by %s; reconnecting with sslmode=disable", self.params.host
            )
            self.params = replace(self.params, sslmode="disable")
            self.pool = await self._create_pool(self.params)
        logger.info(
            "Connected to %s@%s:%d (pool %d-%d)",
            self.params.database,
            self.params.host,
            self.params.port,
            self.min_pool_size,
            self.max_pool_size,
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("Closed pool for %s", self.params.database)

    def require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError("Database pool is not connected")
        return self.pool
