"""PostgreSQL Database Layer with Repository Pattern

Owns the asyncpg pool and exposes the analysis repositories.
"""

import asyncpg
import json
from dataclasses import asdict, is_dataclass
from typing import Optional
from pathlib import Path

from config import get_logger, config
from database.repositories_async import ConversationRepository, JobRepository
from exceptions import DatabaseConnectionError

logger = get_logger(__name__).bind(component="database_postgres")


def _jsonb_encoder(obj):
    """JSONB encoder that also serializes dataclass instances"""
    def default(o):
        if is_dataclass(o) and not isinstance(o, type):
            return asdict(o)
        raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")

    return json.dumps(obj, default=default)


class Database:
    """Async PostgreSQL database with repository pattern

    Usage:
        db = await Database.create()
        claim = await db.jobs.claim_job(job_id, lock_ttl_ms)
        responses = await db.conversations.get_responses(conversation_id)
        await db.close()
    """

    pool: asyncpg.Pool

    jobs: JobRepository
    conversations: ConversationRepository

    def __init__(self, pool: asyncpg.Pool):
        """Use Database.create() instead of direct instantiation"""
        self.pool = pool
        self.jobs = JobRepository(pool)
        self.conversations = ConversationRepository(pool)

    @classmethod
    async def create(
        cls,
        dsn: Optional[str] = None,
        min_size: int = config.POSTGRES_POOL_MIN_SIZE,
        max_size: int = config.POSTGRES_POOL_MAX_SIZE
    ) -> "Database":
        """Create database with connection pool

        Args:
            dsn: PostgreSQL connection string (defaults to config.get_postgres_dsn())
            min_size: Minimum pool size
            max_size: Maximum pool size

        Raises:
            DatabaseConnectionError: If the pool cannot be created
        """
        if dsn is None:
            dsn = config.get_postgres_dsn()

        async def init_connection(conn):
            """Initialize connection with JSONB codec for automatic serialization"""
            await conn.set_type_codec(
                'jsonb',
                encoder=_jsonb_encoder,
                decoder=json.loads,
                schema='pg_catalog'
            )

        try:
            pool = await asyncpg.create_pool(
                dsn,
                min_size=min_size,
                max_size=max_size,
                command_timeout=60,
                init=init_connection,
            )
            logger.info("connection pool created", min_size=min_size, max_size=max_size)
            return cls(pool)
        except (asyncpg.PostgresError, OSError, ConnectionError) as e:
            # Connection-specific errors only - let programming errors fail loudly
            logger.error("failed to create connection pool", error=str(e))
            raise DatabaseConnectionError(f"Failed to connect to PostgreSQL: {e}") from e

    async def close(self):
        """Close connection pool"""
        await self.pool.close()
        logger.info("connection pool closed")

    async def init_schema(self):
        """Create analysis tables and indexes (idempotent)"""
        schema_path = Path(__file__).parent / "schema_postgres.sql"
        if not schema_path.exists():
            raise FileNotFoundError(f"Schema file not found: {schema_path}")

        async with self.pool.acquire() as conn:
            await conn.execute(schema_path.read_text())

        logger.info("schema initialized")
