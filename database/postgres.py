"""PostgreSQL repository backed by an asyncpg connection pool.

Aggregates are stored as JSONB documents in a single ``aggregates`` table
keyed by (kind, id) with a version column, which gives compare-and-swap
semantics through a conditional UPDATE.
"""

import logging
import ssl
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, Dict, List, Optional, Type
from urllib.parse import urlparse, parse_qs

import asyncpg
import backoff
from pydantic import BaseModel

from . import Repository, ModelT
from .exceptions import ConcurrentModificationError, DatabaseError
from .lib.schema_manager import SchemaManager

logger = logging.getLogger(__name__)


def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for hosted database connections."""
    ssl_context = ssl.create_default_context()
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    return ssl_context


def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    parsed = urlparse(db_url)
    params = parse_qs(parsed.query)

    kwargs = {}
    if params.get('sslmode', ['disable'])[0] in ('require', 'verify-full'):
        kwargs['ssl'] = _get_ssl_context()
    return kwargs


@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def create_pool(db_url: str) -> asyncpg.Pool:
    """Create the connection pool, retrying while the server comes up.

    Args:
        db_url: Database connection URL

    Raises:
        ValueError: If database URL is not provided
    """
    if not db_url:
        raise ValueError("Database URL not provided")

    pool = await asyncpg.create_pool(
        db_url,
        min_size=2,
        max_size=20,
        max_inactive_connection_lifetime=300.0,
        command_timeout=60.0,
        **_get_connection_kwargs(db_url)
    )
    logger.info("Created database connection pool")
    return pool


class PostgresRepository(Repository):
    """Repository storing every aggregate kind in one versioned JSONB table."""

    def __init__(self, pool: asyncpg.Pool, models: Dict[str, Type[BaseModel]]) -> None:
        """Initialize repository.

        Args:
            pool: Database connection pool
            models: Mapping of aggregate kind to model class
        """
        self.pool = pool
        self.models = models
        self._connection: ContextVar[Optional[asyncpg.Connection]] = (
            ContextVar(f'postgres_repository_connection_{id(self)}', default=None)
        )

    async def initialize(self) -> None:
        """Create or migrate the schema."""
        await SchemaManager(self.pool).initialize()

    async def close(self) -> None:
        await self.pool.close()

    @asynccontextmanager
    async def _acquire(self):
        conn = self._connection.get()
        if conn is not None:
            yield conn
            return
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        if self._connection.get() is not None:
            yield
            return

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                token = self._connection.set(conn)
                try:
                    yield
                finally:
                    self._connection.reset(token)

    def _decode(self, kind: str, body: str, version: int) -> BaseModel:
        model = self.models.get(kind)
        if model is None:
            raise DatabaseError(f"No model registered for aggregate kind {kind}")
        return model.model_validate_json(body).model_copy(update={'version': version})

    async def get(self, kind: str, key: str) -> Optional[BaseModel]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                'SELECT body, version FROM aggregates WHERE kind = $1 AND id = $2',
                kind,
                key
            )
        if not row:
            return None
        return self._decode(kind, row['body'], row['version'])

    async def add(self, kind: str, key: str, value: ModelT) -> ModelT:
        stored = value.model_copy(update={'version': 1})
        async with self._acquire() as conn:
            result = await conn.execute(
                '''
                INSERT INTO aggregates (kind, id, version, body)
                VALUES ($1, $2, 1, $3::jsonb)
                ON CONFLICT (kind, id) DO NOTHING
                ''',
                kind,
                key,
                stored.model_dump_json()
            )
        if result.split()[-1] != '1':
            raise ConcurrentModificationError(kind, key, 0)
        return stored

    async def compare_and_swap(self, kind: str, key: str, value: ModelT) -> ModelT:
        stored = value.model_copy(update={'version': value.version + 1})
        async with self._acquire() as conn:
            result = await conn.execute(
                '''
                UPDATE aggregates
                SET
                    body = $4::jsonb,
                    version = version + 1,
                    updated_at = now()
                WHERE
                    kind = $1
                    AND id = $2
                    AND version = $3
                ''',
                kind,
                key,
                value.version,
                stored.model_dump_json()
            )
        if result.split()[-1] != '1':
            raise ConcurrentModificationError(kind, key, value.version)
        return stored

    async def list(self, kind: str) -> List[BaseModel]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                'SELECT body, version FROM aggregates WHERE kind = $1 ORDER BY created_at',
                kind
            )
        return [self._decode(kind, row['body'], row['version']) for row in rows]
