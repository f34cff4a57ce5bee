"""Collection accessor interface.

The versioned store talks to storage only through this narrow interface,
one accessor per resource type and collection kind (current or history).
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

Document = Dict[str, Any]


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of a conditional replace-or-insert."""

    previous: Optional[Document]
    was_insert: bool


@runtime_checkable
class CollectionAccessor(Protocol):
    """Storage operations over one document collection.

    Implementations raise DuplicateRecordError when a storage key is
    already taken, StorageUnavailableError when the backend cannot be
    reached and StorageError for any other driver failure.
    """

    async def count(self, filter: Optional[Mapping[str, Any]] = None) -> int:
        ...

    async def find(self, filter: Mapping[str, Any]) -> List[Document]:
        ...

    async def find_one(self, filter: Mapping[str, Any]) -> Optional[Document]:
        ...

    async def insert(self, document: Document) -> Document:
        ...

    async def find_one_and_update(
        self,
        filter: Mapping[str, Any],
        replacement: Document,
        upsert: bool = True,
    ) -> UpsertResult:
        ...

    async def remove(self, filter: Mapping[str, Any]) -> int:
        ...
