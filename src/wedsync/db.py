"""PostgreSQL provisioning and the asyncpg pool shared by the store and the API.

Connection parameters come from the environment: ``DATABASE_URL`` when set
(its path names the database), otherwise the ``POSTGRES_*`` variables plus
the database name from ``[database]`` in ``wedsync.toml``.
"""

from __future__ import annotations

import logging
import os
from typing import Any
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

from wedsync.config import DatabaseConfig

logger = logging.getLogger(__name__)

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
# asyncpg's STARTTLS handshake fails this way against servers without SSL.
_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"


def _normalize_ssl_mode(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    normalized = value.strip().lower()
    if normalized not in _VALID_SSL_MODES:
        logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
        return None
    return normalized


def _params_from_database_url(database_url: str) -> dict[str, Any]:
    parsed = urlparse(database_url)
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username or "wedsync",
        "password": parsed.password or "wedsync",
        "ssl": _normalize_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0]),
        "db_name": parsed.path.lstrip("/") or None,
    }


def db_params_from_env() -> dict[str, Any]:
    """Connection parameters from ``DATABASE_URL`` or the ``POSTGRES_*`` variables.

    ``db_name`` is ``None`` unless ``DATABASE_URL`` carries a database path.
    """
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return _params_from_database_url(database_url)
    return {
        "host": os.environ.get("POSTGRES_HOST", "localhost"),
        "port": int(os.environ.get("POSTGRES_PORT", "5432")),
        "user": os.environ.get("POSTGRES_USER", "wedsync"),
        "password": os.environ.get("POSTGRES_PASSWORD", "wedsync"),
        "ssl": _normalize_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
        "db_name": None,
    }


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """True when an unconfigured SSL upgrade was dropped by the server."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


class Database:
    """Owns the wedsync database: creates it when missing and opens the pool."""

    def __init__(
        self,
        db_name: str,
        host: str = "localhost",
        port: int = 5432,
        user: str = "wedsync",
        password: str = "wedsync",
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        """Build from ``[database]`` settings and the connection environment."""
        params = db_params_from_env()
        return cls(
            db_name=params["db_name"] or config.name,
            host=params["host"],
            port=params["port"],
            user=params["user"],
            password=params["password"],
            ssl=params["ssl"],
            min_pool_size=config.min_pool_size,
            max_pool_size=config.max_pool_size,
        )

    @property
    def url(self) -> str:
        """libpq URL of the application database, as alembic expects it."""
        credentials = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}"
        url = f"postgresql://{credentials}@{self.host}:{self.port}/{quote(self.db_name)}"
        if self.ssl is not None:
            url += f"?sslmode={self.ssl}"
        return url

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs

    async def _connect_with_ssl_fallback(self, factory: Any, kwargs: dict[str, Any]) -> Any:
        try:
            return await factory(**kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.ssl):
                raise
            logger.info("Retrying PostgreSQL connection with ssl=disable after SSL upgrade loss")
            return await factory(**{**kwargs, "ssl": "disable"})

    async def provision(self) -> None:
        """Create the application database through the ``postgres`` maintenance DB."""
        conn = await self._connect_with_ssl_fallback(
            asyncpg.connect, self._connect_kwargs("postgres")
        )
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1",
                self.db_name,
            )
            if exists:
                logger.debug("Database already exists: %s", self.db_name)
                return
            # Identifiers cannot be bound as parameters.
            safe_name = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{safe_name}" TEMPLATE template0')
            logger.info("Created database: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        kwargs = self._connect_kwargs(self.db_name)
        kwargs["min_size"] = self.min_pool_size
        kwargs["max_size"] = self.max_pool_size
        self.pool = await self._connect_with_ssl_fallback(asyncpg.create_pool, kwargs)
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", self.db_name)
