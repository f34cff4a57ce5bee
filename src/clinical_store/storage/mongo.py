"""MongoDB storage for Clinical Store.

Wraps pymongo's asyncio API behind the CollectionAccessor interface and
owns the client lifecycle. Driver exceptions never leave this module;
they are translated into the Clinical Store exception hierarchy.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, List, Mapping, Optional, TypeVar

from pymongo import AsyncMongoClient, ReturnDocument
from pymongo.errors import AutoReconnect, ConnectionFailure, DuplicateKeyError, PyMongoError

from clinical_store.config import Settings, get_settings
from clinical_store.core.exceptions import (
    DuplicateRecordError,
    StorageError,
    StorageUnavailableError,
)
from clinical_store.storage.accessor import Document, UpsertResult
from clinical_store.utils.logging import get_logger
from clinical_store.utils.retry import retry_with_backoff

logger = get_logger(__name__)

T = TypeVar("T")


class MongoCollectionAccessor:
    """CollectionAccessor over one asyncio MongoDB collection.

    Reads interrupted by a reconnect are retried with backoff; writes are
    issued once.
    """

    def __init__(
        self,
        collection: Any,
        read_retries: int = 2,
        retry_delay: float = 0.2,
    ):
        """Initialize accessor.

        Args:
            collection: pymongo ``AsyncCollection`` or a compatible object
            read_retries: Retries for reads failing with AutoReconnect
            retry_delay: Initial backoff delay in seconds
        """
        self.collection = collection
        self.name: str = getattr(collection, "name", "collection")
        self._read = retry_with_backoff(
            max_retries=read_retries,
            initial_delay=retry_delay,
            max_delay=max(retry_delay, 5.0),
            exceptions=(AutoReconnect,),
        )(self._await)

    @staticmethod
    async def _await(call: Callable[[], Awaitable[T]]) -> T:
        return await call()

    @asynccontextmanager
    async def _driver_errors(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except DuplicateKeyError as e:
            raise DuplicateRecordError(
                f"Duplicate key in {self.name}.{operation}: {e.details or e}"
            ) from e
        except ConnectionFailure as e:
            logger.error(
                "storage_unavailable",
                collection=self.name,
                operation=operation,
                error=str(e),
            )
            raise StorageUnavailableError(
                f"MongoDB unavailable during {self.name}.{operation}"
            ) from e
        except PyMongoError as e:
            logger.error(
                "storage_error",
                collection=self.name,
                operation=operation,
                error=str(e),
            )
            raise StorageError(f"MongoDB error during {self.name}.{operation}: {e}") from e

    async def count(self, filter: Optional[Mapping[str, Any]] = None) -> int:
        async with self._driver_errors("count"):
            total: int = await self._read(
                lambda: self.collection.count_documents(dict(filter or {}))
            )
            return total

    async def find(self, filter: Mapping[str, Any]) -> List[Document]:
        async with self._driver_errors("find"):
            documents: List[Document] = await self._read(
                lambda: self.collection.find(dict(filter)).to_list(None)
            )
            return documents

    async def find_one(self, filter: Mapping[str, Any]) -> Optional[Document]:
        async with self._driver_errors("find_one"):
            document: Optional[Document] = await self._read(
                lambda: self.collection.find_one(dict(filter))
            )
            return document

    async def insert(self, document: Document) -> Document:
        async with self._driver_errors("insert"):
            await self.collection.insert_one(document)
            return document

    async def find_one_and_update(
        self,
        filter: Mapping[str, Any],
        replacement: Document,
        upsert: bool = True,
    ) -> UpsertResult:
        """Replace the matching document, inserting it when nothing matches.

        The whole document is replaced, so fields absent from
        ``replacement`` do not survive.
        """
        async with self._driver_errors("find_one_and_update"):
            previous = await self.collection.find_one_and_replace(
                dict(filter),
                replacement,
                upsert=upsert,
                return_document=ReturnDocument.BEFORE,
            )
        return UpsertResult(previous=previous, was_insert=previous is None and upsert)

    async def remove(self, filter: Mapping[str, Any]) -> int:
        async with self._driver_errors("remove"):
            result = await self.collection.delete_many(dict(filter))
            deleted: int = result.deleted_count
            return deleted


class MongoConnection:
    """Owns a MongoDB client and hands out collection accessors."""

    def __init__(self, settings: Optional[Settings] = None, client: Any = None):
        """Initialize connection.

        Args:
            settings: Application settings. If None, uses cached settings.
            client: An already-constructed asyncio client. The caller keeps
                ownership of an injected client and must close it.
        """
        self.settings = settings or get_settings()
        self.client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "MongoConnection":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def connect(self) -> None:
        """Create the client if none was injected."""
        if self.client is not None:
            return
        self.client = AsyncMongoClient(
            self.settings.mongo_url,
            serverSelectionTimeoutMS=self.settings.mongo_server_selection_timeout_ms,
        )
        self._owns_client = True
        logger.info(
            "mongo_client_created",
            database=self.settings.mongo_database,
        )

    @property
    def database(self) -> Any:
        if self.client is None:
            raise StorageUnavailableError("MongoDB connection is not open")
        return self.client[self.settings.mongo_database]

    def accessor(self, collection: str) -> MongoCollectionAccessor:
        """Accessor for ``collection`` in the configured database."""
        return MongoCollectionAccessor(
            self.database[collection],
            read_retries=self.settings.mongo_read_retries,
            retry_delay=self.settings.mongo_retry_delay,
        )

    async def check_health(self) -> bool:
        """Ping the server.

        Returns:
            True if the server answered, False otherwise
        """
        try:
            await self.database.command("ping")
        except (PyMongoError, StorageUnavailableError) as e:
            logger.warning("mongo_ping_failed", error=str(e))
            return False
        return True

    async def close(self) -> None:
        """Close the client if this connection created it."""
        if self.client is not None and self._owns_client:
            await self.client.close()
            logger.info("mongo_client_closed")
        if self._owns_client:
            self.client = None
