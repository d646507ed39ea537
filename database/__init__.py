"""Database module for storing trade engine aggregates.

This module handles:
- The repository interface every manager reads and writes through
- The in-memory repository used by default and in tests
- Selecting and initializing the configured backend
- Repository lifecycle
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from .exceptions import DatabaseError, ConcurrentModificationError

logger = logging.getLogger(__name__)

# Aggregate kinds
USERS = 'users'
ITEMS = 'items'
TRADES = 'trades'
DISPUTES = 'disputes'
RATINGS = 'ratings'
ESCROW_HOLDS = 'escrow_holds'
ESCROW_ENTRIES = 'escrow_entries'

ModelT = TypeVar('ModelT', bound=BaseModel)


class Repository(ABC):
    """Versioned key-value storage for aggregates.

    Every stored model carries a ``version`` field. ``add`` stores version 1;
    ``compare_and_swap`` only succeeds when the stored version equals the
    version on the model being written, and returns the stored copy with the
    version incremented. Writes made inside ``transaction()`` commit or roll
    back together.
    """

    @abstractmethod
    async def get(self, kind: str, key: str) -> Optional[BaseModel]:
        """Return a copy of the stored aggregate, or None."""

    @abstractmethod
    async def add(self, kind: str, key: str, value: ModelT) -> ModelT:
        """Store a new aggregate.

        Raises:
            ConcurrentModificationError: If the key already exists
        """

    @abstractmethod
    async def compare_and_swap(self, kind: str, key: str, value: ModelT) -> ModelT:
        """Replace an aggregate if nobody else changed it since it was read.

        Raises:
            ConcurrentModificationError: If the stored version differs
        """

    @abstractmethod
    async def list(self, kind: str) -> List[BaseModel]:
        """Return copies of every aggregate of a kind."""

    @abstractmethod
    def transaction(self):
        """Async context manager grouping writes into one atomic unit."""

    async def put(self, kind: str, key: str, value: ModelT) -> ModelT:
        """Add when new (version 0), otherwise compare-and-swap."""
        if value.version == 0:
            return await self.add(kind, key, value)
        return await self.compare_and_swap(kind, key, value)

    async def close(self) -> None:
        pass


class MemoryRepository(Repository):
    """Process-local repository.

    Writes are serialized by one lock. A transaction holds that lock for its
    whole duration and journals the previous value of every key it writes,
    restoring them if the block raises.

    Writes land in the store as they happen, so reads do not wait for the
    write lock and may observe a transaction that has not committed yet.
    Writers are still serialized and a failed block is fully restored.
    Callers that must only act on committed state read under the
    aggregate's lock from ``database.locks``, which every writer holds
    across its transaction. Notifications raised inside a transaction are
    deferred until it commits (``Notifier.deferred``).
    """

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, BaseModel]] = defaultdict(dict)
        self._write_lock = asyncio.Lock()
        self._journal: ContextVar[Optional[List[Tuple[str, str, Optional[BaseModel]]]]] = (
            ContextVar(f'memory_repository_journal_{id(self)}', default=None)
        )

    async def get(self, kind: str, key: str) -> Optional[BaseModel]:
        value = self._data[kind].get(key)
        return value.model_copy(deep=True) if value is not None else None

    async def add(self, kind: str, key: str, value: ModelT) -> ModelT:
        async with self._write_scope():
            if key in self._data[kind]:
                raise ConcurrentModificationError(kind, key, 0)
            stored = value.model_copy(deep=True, update={'version': 1})
            self._write(kind, key, stored)
            return stored.model_copy(deep=True)

    async def compare_and_swap(self, kind: str, key: str, value: ModelT) -> ModelT:
        async with self._write_scope():
            current = self._data[kind].get(key)
            if current is None or current.version != value.version:
                raise ConcurrentModificationError(kind, key, value.version)
            stored = value.model_copy(deep=True, update={'version': value.version + 1})
            self._write(kind, key, stored)
            return stored.model_copy(deep=True)

    async def list(self, kind: str) -> List[BaseModel]:
        return [value.model_copy(deep=True) for value in self._data[kind].values()]

    @asynccontextmanager
    async def transaction(self):
        if self._journal.get() is not None:
            # Nested blocks join the outer transaction
            yield
            return

        async with self._write_lock:
            journal: List[Tuple[str, str, Optional[BaseModel]]] = []
            token = self._journal.set(journal)
            try:
                yield
            except BaseException:
                for kind, key, previous in reversed(journal):
                    if previous is None:
                        self._data[kind].pop(key, None)
                    else:
                        self._data[kind][key] = previous
                logger.debug(f"Rolled back {len(journal)} writes")
                raise
            finally:
                self._journal.reset(token)

    @asynccontextmanager
    async def _write_scope(self):
        if self._journal.get() is not None:
            yield
            return
        async with self._write_lock:
            yield

    def _write(self, kind: str, key: str, value: BaseModel) -> None:
        journal = self._journal.get()
        if journal is not None:
            journal.append((kind, key, self._data[kind].get(key)))
        self._data[kind][key] = value


_repository: Optional[Repository] = None


async def init_db(
    models: Dict[str, Type[BaseModel]],
    backend: Optional[str] = None,
    db_url: Optional[str] = None
) -> Repository:
    """Initialize the configured repository.

    Args:
        models: Mapping of aggregate kind to model class, used to decode rows
        backend: 'memory' or 'postgres'. If not provided, will use settings.
        db_url: Optional database URL. If not provided, will use settings.

    Returns:
        The initialized repository

    Raises:
        DatabaseError: If the backend is unknown or initialization fails
    """
    global _repository

    # Import here to avoid circular imports
    from config import settings_conf

    backend = backend or settings_conf['storage_backend']

    if backend == 'memory':
        _repository = MemoryRepository()
    elif backend == 'postgres':
        from .postgres import PostgresRepository, create_pool
        pool = await create_pool(db_url or settings_conf['db_url'])
        _repository = PostgresRepository(pool, models)
        await _repository.initialize()
    else:
        raise DatabaseError(f"Unknown storage backend: {backend}")

    logger.info(f"Initialized {backend} repository")
    return _repository


def get_repository() -> Repository:
    """Get the initialized repository.

    Raises:
        RuntimeError: If the repository hasn't been initialized
    """
    if not _repository:
        raise RuntimeError("Repository has not been initialized")
    return _repository


async def close() -> None:
    """Close the repository."""
    global _repository

    if _repository:
        await _repository.close()
        _repository = None


# Export public interface
__all__ = [
    'Repository', 'MemoryRepository', 'init_db', 'get_repository', 'close',
    'DatabaseError', 'ConcurrentModificationError',
    'USERS', 'ITEMS', 'TRADES', 'DISPUTES', 'RATINGS', 'ESCROW_HOLDS', 'ESCROW_ENTRIES',
]
