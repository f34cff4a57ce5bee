"""Services for Clinical Store."""

from clinical_store.services.resource_service import ResourceService
from clinical_store.services.store_manager import StoreManager
from clinical_store.services.versioned_store import (
    CreateResult,
    RemoveResult,
    UpdateResult,
    VersionedStore,
)

__all__ = [
    "CreateResult",
    "RemoveResult",
    "ResourceService",
    "StoreManager",
    "UpdateResult",
    "VersionedStore",
]
