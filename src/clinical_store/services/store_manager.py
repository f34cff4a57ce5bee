"""Store manager.

Builds one VersionedStore per resource type and base version, each with
its own current and history accessors, and ties them to the lifecycle of
the MongoDB connection.
"""

from typing import Any, Dict, Optional, Tuple

from clinical_store.config import Settings, get_settings
from clinical_store.healthcare.fhir_resources import fhir_model_factory
from clinical_store.search.compiler import QueryCompiler
from clinical_store.search.registry import ResourceTypeRegistry
from clinical_store.services.resource_service import ResourceService
from clinical_store.services.versioned_store import VersionedStore
from clinical_store.storage.mongo import MongoConnection
from clinical_store.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


class StoreManager:
    """Owns the storage connection and the per-resource stores."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        connection: Optional[MongoConnection] = None,
        registry: Optional[ResourceTypeRegistry] = None,
    ):
        """Initialize the manager.

        Args:
            settings: Application settings. If None, uses cached settings.
            connection: MongoDB connection; one is created from settings
                if not given
            registry: Search parameter registry; built-in tables if not given
        """
        self.settings = settings or get_settings()
        self.connection = connection or MongoConnection(self.settings)
        self.registry = registry or ResourceTypeRegistry(
            default_base=self.settings.fhir_base_version
        )
        self._stores: Dict[Tuple[str, str], VersionedStore] = {}

    async def __aenter__(self) -> "StoreManager":
        """Async context manager entry."""
        await self.startup()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.shutdown()

    async def startup(self) -> None:
        """Configure logging and open the storage connection."""
        setup_logging(self.settings)
        await self.connection.connect()
        logger.info(
            "store_manager_started",
            base=self.registry.default_base,
            resource_types=self.registry.resource_types(),
        )

    async def shutdown(self) -> None:
        """Drop the stores and close the storage connection."""
        self._stores.clear()
        await self.connection.close()
        logger.info("store_manager_stopped")

    def store(self, resource_type: str, base: Optional[str] = None) -> VersionedStore:
        """Versioned store of ``resource_type`` for ``base``.

        Raises:
            InvalidArgumentError: If the resource type or base is unknown
        """
        base = base or self.registry.default_base
        key = (resource_type, base)
        if key not in self._stores:
            definitions = self.registry.search_parameters(resource_type, base)
            factory = (
                fhir_model_factory(resource_type)
                if self.settings.wrap_fhir_models
                else None
            )
            self._stores[key] = VersionedStore(
                resource_type,
                current=self.connection.accessor(resource_type),
                history=self.connection.accessor(
                    self.settings.history_collection(resource_type)
                ),
                compiler=QueryCompiler(definitions),
                resource_factory=factory,
            )
        return self._stores[key]

    def service(self, resource_type: str, base: Optional[str] = None) -> ResourceService:
        """Request-facing service of ``resource_type`` for ``base``."""
        base = base or self.registry.default_base
        return ResourceService(
            resource_type, self.store(resource_type, base), self.registry, base
        )

    async def check_health(self) -> Dict[str, Any]:
        """Report whether storage answers.

        Returns:
            Health status dictionary
        """
        healthy = await self.connection.check_health()
        return {
            "status": "healthy" if healthy else "unhealthy",
            "database": self.settings.mongo_database,
            "stores": sorted(f"{name}@{base}" for name, base in self._stores),
        }
