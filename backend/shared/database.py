"""asyncpg pool shared by the API server and the maintenance scripts.

Hosted Postgres is reached through a transaction pooler on port 6543, which
cannot keep prepared statements, so the statement cache is turned off for it.
Local databases (localhost / 127.0.0.1) are reached without TLS.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, fields
from typing import Any, ClassVar
from urllib.parse import urlparse

import asyncpg

logger = logging.getLogger(__name__)

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1", ""}


@dataclass
class PoolConfig:
    min_size: int = 1
    max_size: int = 5
    acquire_timeout: float = 5.0
    command_timeout: float = 15.0
    idle_lifetime: float = 30.0
    connect_attempts: int = 3
    backoff: float = 3.0

    # api: diff / restore requests hold a connection only briefly
    # maintenance: one-shot purge and migration scripts
    _PRESETS: ClassVar[dict[str, dict[str, Any]]] = {
        "api": {"max_size": 10},
        "maintenance": {"max_size": 2, "connect_attempts": 1},
    }

    @classmethod
    def for_service(cls, service: str, **overrides: Any) -> PoolConfig:
        known = {f.name for f in fields(cls)}
        values = {**cls._PRESETS.get(service, {}), **overrides}
        return cls(**{k: v for k, v in values.items() if k in known})


def _ssl_mode(database_url: str) -> str | None:
    """TLS for remote hosts unless the URL already says what it wants."""
    parsed = urlparse(database_url)
    if "sslmode=" in parsed.query or (parsed.hostname or "") in _LOCAL_HOSTS:
        return None
    return "require"


class DatabaseManager:
    """Owns one asyncpg pool; ``connect`` retries with exponential backoff."""

    def __init__(self, database_url: str, config: PoolConfig | None = None):
        self.database_url = database_url
        self.config = config or PoolConfig()
        self.behind_pooler = urlparse(database_url).port == 6543
        self._pool: asyncpg.Pool | None = None

    async def _open_pool(self) -> asyncpg.Pool:
        cfg = self.config
        pool = await asyncpg.create_pool(
            dsn=self.database_url,
            min_size=0 if self.behind_pooler else cfg.min_size,
            max_size=cfg.max_size,
            timeout=cfg.acquire_timeout,
            command_timeout=cfg.command_timeout,
            max_inactive_connection_lifetime=cfg.idle_lifetime,
            statement_cache_size=0 if self.behind_pooler else 100,
            ssl=_ssl_mode(self.database_url),
        )
        try:
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except BaseException:
            await pool.close()
            raise
        return pool

    async def connect(self) -> None:
        if self._pool is not None:
            logger.warning("Database pool already initialized")
            return

        attempts = self.config.connect_attempts
        for attempt in range(1, attempts + 1):
            try:
                self._pool = await self._open_pool()
            except Exception as e:
                if attempt == attempts:
                    logger.error(f"Database unreachable after {attempts} attempt(s): {e!r}")
                    raise
                delay = self.config.backoff * 2 ** (attempt - 1)
                logger.warning(
                    f"Database connect attempt {attempt}/{attempts} failed ({e!r}), "
                    f"retrying in {delay:.0f}s"
                )
                await asyncio.sleep(delay)
            else:
                logger.info(
                    f"Database pool ready (max_size={self.config.max_size}, "
                    f"pooler={'yes' if self.behind_pooler else 'no'})"
                )
                return

    async def disconnect(self) -> None:
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        await pool.close()
        logger.info("Database pool closed")

    async def check_health(self) -> bool:
        """Round-trip ``SELECT 1``; False instead of raising."""
        if self._pool is None:
            return False
        try:
            async with self._pool.acquire(timeout=2.0) as conn:
                await conn.fetchval("SELECT 1")
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
            logger.warning(f"Database health check failed: {e!r}")
            return False
        return True

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized, call connect() first")
        return self._pool
