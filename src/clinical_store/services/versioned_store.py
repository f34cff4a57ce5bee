"""Versioned resource store.

Owns create/update/patch/remove/search/history for one resource type. Every
write produces a current record carrying ``meta.versionId`` and an
immutable history record for that version.

Write protocol for ``update`` and ``patch``:
    1. read the current record and compute the next version
    2. append the history record ``<id>_<version>``
    3. promote the current record with an upsert conditional on the
       version read in step 1

Writes to the same id are serialized inside this process. Across
processes the conditional upsert turns a lost race into a
VersionConflictError instead of a silent overwrite. Steps 2 and 3 are two
storage operations: a crash between them leaves a history record one
version ahead of the current record. The next write for that id detects
the orphan and replaces it.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import jsonpatch
from jsonpointer import JsonPointerException

from clinical_store.core.exceptions import (
    ConflictError,
    DuplicateRecordError,
    InvalidArgumentError,
    StorageError,
    VersionConflictError,
)
from clinical_store.healthcare.fhir_resources import ResourceFactory, as_document
from clinical_store.search.compiler import QueryCompiler
from clinical_store.search.types import SearchParameter
from clinical_store.storage.accessor import CollectionAccessor, Document
from clinical_store.utils.locks import KeyedLock
from clinical_store.utils.logging import get_logger

logger = get_logger(__name__)

FIRST_VERSION = "1"


@dataclass(frozen=True)
class CreateResult:
    """Result of ``create``."""

    id: str

    def as_dict(self) -> Dict[str, Any]:
        return {"id": self.id}


@dataclass(frozen=True)
class UpdateResult:
    """Result of ``update``."""

    id: str
    created: bool
    resource_version: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created": self.created,
            "resourceVersion": self.resource_version,
        }


@dataclass(frozen=True)
class RemoveResult:
    """Result of ``remove``."""

    deleted: int

    def as_dict(self) -> Dict[str, Any]:
        return {"deleted": self.deleted}


def history_key(resource_id: str, version_id: str) -> str:
    """Storage key of the history record for one version."""
    return f"{resource_id}_{version_id}"


def utc_timestamp() -> str:
    """Current UTC time as ``YYYY-MM-DDTHH:MM:SS+00:00``."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _version_number(document: Optional[Document]) -> int:
    """Integer version of a stored record, 0 when it has none."""
    if not document or not document.get("meta"):
        return 0
    version = document["meta"].get("versionId")
    try:
        return int(version)
    except (TypeError, ValueError) as e:
        raise StorageError(
            f"Stored record {document.get('id')} has non-numeric versionId {version!r}"
        ) from e


class VersionedStore:
    """CRUD with optimistic versioning and history for one resource type."""

    def __init__(
        self,
        resource_type: str,
        current: CollectionAccessor,
        history: CollectionAccessor,
        compiler: QueryCompiler,
        resource_factory: Optional[ResourceFactory] = None,
    ):
        """Initialize the store.

        Args:
            resource_type: FHIR resource type stored here
            current: Accessor of the current-record collection
            history: Accessor of the history collection
            compiler: Search compiler built from this type's parameter table
            resource_factory: Optional wrapper applied to returned records
        """
        self.resource_type = resource_type
        self.current_collection = current
        self.history_collection = history
        self.compiler = compiler
        self.resource_factory = resource_factory
        self._locks = KeyedLock()

    def _to_resource(self, document: Optional[Document]) -> Any:
        if document is None:
            return None
        record = {key: value for key, value in document.items() if key != "_id"}
        if self.resource_factory is not None:
            return self.resource_factory(record)
        return record

    def _to_resources(self, documents: Iterable[Document]) -> List[Any]:
        return [self._to_resource(document) for document in documents]

    async def count(self) -> int:
        """Total number of current records."""
        logger.info("resource_count", resource_type=self.resource_type)
        return await self.current_collection.count()

    async def search(self, params: Iterable[SearchParameter]) -> List[Any]:
        """Current records matching all parameters, in storage order."""
        query = self.compiler.compile(params)
        logger.info(
            "resource_search",
            resource_type=self.resource_type,
            fields=sorted(query.fields),
            or_groups=len(query.or_groups),
        )
        documents = await self.current_collection.find(query.to_filter())
        return self._to_resources(documents)

    async def search_by_id(self, resource_id: str) -> Any:
        """Current record for ``resource_id``, or None."""
        logger.info(
            "resource_search_by_id",
            resource_type=self.resource_type,
            resource_id=resource_id,
        )
        document = await self.current_collection.find_one({"id": str(resource_id)})
        return self._to_resource(document)

    async def search_by_version_id(self, resource_id: str, version_id: str) -> Any:
        """History record of one version, or None."""
        logger.info(
            "resource_search_by_version_id",
            resource_type=self.resource_type,
            resource_id=resource_id,
            version_id=version_id,
        )
        document = await self.history_collection.find_one(
            {"id": str(resource_id), "meta.versionId": str(version_id)}
        )
        return self._to_resource(document)

    async def history(self, params: Iterable[SearchParameter]) -> List[Any]:
        """Every retained version of every record matching the parameters."""
        query = self.compiler.compile(params)
        logger.info(
            "resource_history",
            resource_type=self.resource_type,
            fields=sorted(query.fields),
            or_groups=len(query.or_groups),
        )
        documents = await self.history_collection.find(query.to_filter())
        return self._to_resources(documents)

    async def history_by_id(self, resource_id: str) -> List[Any]:
        """All retained versions of ``resource_id``."""
        logger.info(
            "resource_history_by_id",
            resource_type=self.resource_type,
            resource_id=resource_id,
        )
        documents = await self.history_collection.find({"id": str(resource_id)})
        return self._to_resources(documents)

    async def create(self, resource_id: str, payload: Any) -> CreateResult:
        """Insert a new current record at version 1.

        Raises:
            ConflictError: If a current record already exists for the id
        """
        resource_id = str(resource_id)
        logger.info(
            "resource_create",
            resource_type=self.resource_type,
            resource_id=resource_id,
        )
        document = as_document(payload)
        document["id"] = resource_id
        document["meta"] = {"versionId": FIRST_VERSION, "lastUpdated": utc_timestamp()}

        async with self._locks.acquire(resource_id):
            if await self.current_collection.find_one({"id": resource_id}) is not None:
                raise ConflictError(
                    f"{self.resource_type}/{resource_id} already exists"
                )

            await self._append_history(resource_id, document)
            try:
                await self.current_collection.insert({**document, "_id": resource_id})
            except DuplicateRecordError as e:
                raise ConflictError(
                    f"{self.resource_type}/{resource_id} already exists"
                ) from e

        return CreateResult(id=resource_id)

    async def update(self, resource_id: str, payload: Any) -> UpdateResult:
        """Write a new version of ``resource_id``, creating it if absent.

        Raises:
            VersionConflictError: If another writer promoted a version first
            ConflictError: If the history record for the version exists
        """
        resource_id = str(resource_id)
        logger.info(
            "resource_update",
            resource_type=self.resource_type,
            resource_id=resource_id,
        )
        document = as_document(payload)

        async with self._locks.acquire(resource_id):
            existing = await self.current_collection.find_one({"id": resource_id})
            return await self._write_version(resource_id, document, existing)

    async def patch(self, resource_id: str, operations: Any) -> UpdateResult:
        """Apply JSON Patch (RFC 6902) operations to the current record.

        The patched document is written as the next version, exactly as
        ``update`` would write it. ``id`` and ``meta`` are managed by the
        store, so operations on them have no lasting effect.

        Raises:
            ConflictError: If there is no current record for the id
            InvalidArgumentError: If the operations are malformed or fail
                against the record
        """
        resource_id = str(resource_id)
        logger.info(
            "resource_patch",
            resource_type=self.resource_type,
            resource_id=resource_id,
        )
        if not isinstance(operations, (list, tuple, str)):
            raise InvalidArgumentError(
                "JSON Patch must be a list of operations, "
                f"got {type(operations).__name__}"
            )
        if isinstance(operations, tuple):
            operations = list(operations)
        if isinstance(operations, list) and not all(
            isinstance(operation, Mapping) for operation in operations
        ):
            raise InvalidArgumentError("Every JSON Patch operation must be an object")

        async with self._locks.acquire(resource_id):
            existing = await self.current_collection.find_one({"id": resource_id})
            if existing is None:
                raise ConflictError(
                    f"Cannot patch {self.resource_type}/{resource_id}: no current record"
                )

            record = {key: value for key, value in existing.items() if key != "_id"}
            try:
                patched = jsonpatch.apply_patch(record, operations)
            except (jsonpatch.JsonPatchException, JsonPointerException, ValueError) as e:
                raise InvalidArgumentError(
                    f"Cannot patch {self.resource_type}/{resource_id}: {e}"
                ) from e
            if not isinstance(patched, dict):
                raise InvalidArgumentError(
                    f"Patched {self.resource_type}/{resource_id} is not a resource"
                )

            return await self._write_version(resource_id, patched, existing)

    async def _write_version(
        self,
        resource_id: str,
        document: Document,
        existing: Optional[Document],
    ) -> UpdateResult:
        """Append history for the next version of ``resource_id`` and promote it.

        Must be called with the id lock held and ``existing`` read under it.
        """
        document["id"] = resource_id
        if existing is not None and existing.get("meta"):
            previous_version = str(existing["meta"].get("versionId"))
            meta = dict(existing["meta"])
            meta["versionId"] = str(_version_number(existing) + 1)
            condition = {"id": resource_id, "meta.versionId": previous_version}
        else:
            meta = {"versionId": FIRST_VERSION, "lastUpdated": utc_timestamp()}
            condition = {"id": resource_id}
        document["meta"] = meta

        await self._append_history(resource_id, document)
        try:
            result = await self.current_collection.find_one_and_update(
                condition, {**document, "_id": resource_id}, upsert=True
            )
        except DuplicateRecordError as e:
            logger.warning(
                "resource_version_conflict",
                resource_type=self.resource_type,
                resource_id=resource_id,
                expected_version=condition.get("meta.versionId"),
            )
            raise VersionConflictError(
                f"{self.resource_type}/{resource_id} changed while updating "
                f"to version {meta['versionId']}"
            ) from e

        return UpdateResult(
            id=resource_id,
            created=result.was_insert,
            resource_version=meta["versionId"],
        )

    async def remove(self, resource_id: str) -> RemoveResult:
        """Delete the current record and its whole history.

        Raises:
            ConflictError: If either delete fails
        """
        resource_id = str(resource_id)
        logger.info(
            "resource_remove",
            resource_type=self.resource_type,
            resource_id=resource_id,
        )
        async with self._locks.acquire(resource_id):
            try:
                deleted = await self.current_collection.remove({"id": resource_id})
            except StorageError as e:
                logger.error(
                    "resource_remove_failed",
                    resource_type=self.resource_type,
                    resource_id=resource_id,
                    error=str(e),
                )
                raise ConflictError(
                    f"Could not delete {self.resource_type}/{resource_id}: {e}"
                ) from e

            try:
                await self.history_collection.remove({"id": resource_id})
            except StorageError as e:
                logger.error(
                    "resource_history_remove_failed",
                    resource_type=self.resource_type,
                    resource_id=resource_id,
                    error=str(e),
                )
                raise ConflictError(
                    f"Could not delete history of {self.resource_type}/{resource_id}: {e}"
                ) from e

        return RemoveResult(deleted=deleted)

    async def _append_history(self, resource_id: str, document: Document) -> None:
        """Insert the history record of ``document``'s version.

        A history record that already exists for a version the current
        record never reached is left over from an interrupted write and is
        replaced. Any other existing record is a conflict.
        """
        version_id = document["meta"]["versionId"]
        key = history_key(resource_id, version_id)
        entry = {**document, "_id": key}
        try:
            await self.history_collection.insert(entry)
            return
        except DuplicateRecordError as e:
            current = await self.current_collection.find_one({"id": resource_id})
            orphan = await self.history_collection.find_one({"_id": key})
            if (
                orphan is None
                or orphan.get("id") != resource_id
                or int(version_id) <= _version_number(current)
            ):
                raise ConflictError(
                    f"History of {self.resource_type}/{resource_id} already has "
                    f"version {version_id}"
                ) from e

        logger.warning(
            "resource_history_orphan_replaced",
            resource_type=self.resource_type,
            resource_id=resource_id,
            version_id=version_id,
        )
        await self.history_collection.find_one_and_update(
            {"_id": key}, entry, upsert=True
        )
