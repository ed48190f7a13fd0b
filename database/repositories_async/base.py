"""Base repository with async PostgreSQL connection pooling

All repositories inherit from BaseRepository and share:
- Connection pool (no connection per-instance)
- Transaction context managers
- Query execution helpers
- Logging infrastructure

Return Type Conventions
-----------------------
    get_X(id) -> Optional[T]
        Single entity lookup by primary key. None if not found.

    get_Xs(...) -> List[T]
        Multiple entity retrieval. Empty list if none match.

    mark_X_if_Y(...) -> bool
        Conditional update. True only if a row actually changed.
"""

import asyncpg
from typing import Any, List, Optional
from contextlib import asynccontextmanager

from config import get_logger

logger = get_logger(__name__).bind(component="repository")


class BaseRepository:
    """Base class for async PostgreSQL repositories

    - Pool is passed in, not created
    - Transactions are explicit (async with self.transaction())
    - Queries use $1, $2 placeholders
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def _fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        """Execute query and fetch single row"""
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def _fetch(self, query: str, *args: Any) -> List[asyncpg.Record]:
        """Execute query and fetch all rows"""
        async with self.pool.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _execute(self, query: str, *args: Any) -> str:
        """Execute query without returning rows; returns the status tag"""
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def _executemany(self, query: str, args: List[tuple]) -> None:
        async with self.pool.acquire() as conn:
            await conn.executemany(query, args)

    @asynccontextmanager
    async def transaction(self):
        """Context manager for explicit transactions

        Usage:
            async with self.transaction() as conn:
                await conn.execute("DELETE ...")
                await conn.executemany("INSERT ...", rows)
                # Commits on exit, rolls back on exception
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    @staticmethod
    def _parse_row_count(result: str) -> int:
        """Extract row count from a status tag like 'UPDATE 1' or 'DELETE 3'"""
        if not result:
            return 0
        return int(result.split()[-1])
