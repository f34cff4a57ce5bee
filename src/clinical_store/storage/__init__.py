"""Document storage for Clinical Store."""

from clinical_store.storage.accessor import CollectionAccessor, Document, UpsertResult
from clinical_store.storage.mongo import MongoCollectionAccessor, MongoConnection

__all__ = [
    "CollectionAccessor",
    "Document",
    "MongoCollectionAccessor",
    "MongoConnection",
    "UpsertResult",
]
