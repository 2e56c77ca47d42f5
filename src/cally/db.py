"""asyncpg pool used by the Postgres-backed stores."""

from __future__ import annotations

import logging
from typing import Any

import asyncpg

from cally.config import DatabaseConfig

logger = logging.getLogger(__name__)


class Database:
    """One asyncpg pool plus the three query calls the stores make.

    The pool is created by :meth:`connect` and released by :meth:`close`;
    queries issued outside that window raise ``RuntimeError``.
    """

    def __init__(self, config: DatabaseConfig, *, min_size: int = 1, max_size: int = 10) -> None:
        self.config = config
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def connected(self) -> bool:
        return self._pool is not None

    async def connect(self) -> None:
        options: dict[str, Any] = {}
        if self.config.ssl is not None:
            options["ssl"] = self.config.ssl
        self._pool = await asyncpg.create_pool(
            host=self.config.host,
            port=self.config.port,
            user=self.config.user,
            password=self.config.password,
            database=self.config.name,
            min_size=self._min_size,
            max_size=self._max_size,
            **options,
        )
        logger.info("Connected to %s on %s:%d", self.name, self.config.host, self.config.port)

    async def close(self) -> None:
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        await pool.close()
        logger.info("Closed pool for %s", self.name)

    def _pool_or_raise(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError(f"Database {self.name!r} is not connected")
        return self._pool

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        return await self._pool_or_raise().fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> Any:
        return await self._pool_or_raise().fetchrow(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        return await self._pool_or_raise().execute(query, *args)
