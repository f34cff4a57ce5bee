"""Generic resource service.

Accepts the argument mappings a FHIR REST framework hands to a resource
service (``id``, ``version_id``, ``resource``, ``patch_content`` and
search arguments) and forwards them to the versioned store of that
resource type.
"""

from typing import Any, Dict, List, Mapping, Optional

from clinical_store.core.exceptions import InvalidArgumentError
from clinical_store.search.registry import ResourceTypeRegistry
from clinical_store.services.versioned_store import VersionedStore


def _required(args: Mapping[str, Any], key: str) -> str:
    value = args.get(key)
    if value is None or value == "":
        raise InvalidArgumentError(f"Missing required argument: {key}")
    return str(value)


class ResourceService:
    """Request-facing operations for one resource type and base version."""

    def __init__(
        self,
        resource_type: str,
        store: VersionedStore,
        registry: ResourceTypeRegistry,
        base: Optional[str] = None,
    ):
        """Initialize the service.

        Args:
            resource_type: FHIR resource type served
            store: Versioned store of that type
            registry: Registry used to type the search arguments
            base: FHIR base version tag, defaults to the registry default
        """
        self.resource_type = resource_type
        self.store = store
        self.registry = registry
        self.base = base or registry.default_base

    async def count(self, args: Optional[Mapping[str, Any]] = None) -> int:
        return await self.store.count()

    async def search(self, args: Mapping[str, Any]) -> List[Any]:
        params = self.registry.parse_arguments(self.resource_type, args, self.base)
        return await self.store.search(params)

    async def search_by_id(self, args: Mapping[str, Any]) -> Any:
        return await self.store.search_by_id(_required(args, "id"))

    async def search_by_version_id(self, args: Mapping[str, Any]) -> Any:
        return await self.store.search_by_version_id(
            _required(args, "id"), _required(args, "version_id")
        )

    async def history(self, args: Mapping[str, Any]) -> List[Any]:
        params = self.registry.parse_arguments(self.resource_type, args, self.base)
        return await self.store.history(params)

    async def history_by_id(self, args: Mapping[str, Any]) -> List[Any]:
        return await self.store.history_by_id(_required(args, "id"))

    async def create(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        result = await self.store.create(_required(args, "id"), args.get("resource"))
        return result.as_dict()

    async def update(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        result = await self.store.update(_required(args, "id"), args.get("resource"))
        return result.as_dict()

    async def patch(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        result = await self.store.patch(
            _required(args, "id"), args.get("patch_content")
        )
        return result.as_dict()

    async def remove(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        result = await self.store.remove(_required(args, "id"))
        return result.as_dict()
