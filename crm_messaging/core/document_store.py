"""
Document store used for message, retry, dead-letter and notification records.

Collections hold JSON documents addressed by id, Firestore style. Every
returned document carries its id under ``"id"``.
"""
import copy
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from crm_messaging.core.exceptions import DocumentNotFoundError
from crm_messaging.core.redis_client import RedisClient


def _matches(document: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(document.get(field) == value for field, value in filters.items())


class DocumentStore(ABC):
    """Async document store contract."""

    @abstractmethod
    async def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, collection: str, document_id: str, document: Dict[str, Any]) -> None:
        """Create or fully replace a document."""

    @abstractmethod
    async def add(self, collection: str, document: Dict[str, Any]) -> str:
        """Create a document under a generated id and return the id."""

    @abstractmethod
    async def update(self, collection: str, document_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``patch`` into an existing document.

        Raises:
            DocumentNotFoundError: if the document does not exist
        """

    @abstractmethod
    async def query(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Return documents whose fields equal every value in ``filters``."""

    @abstractmethod
    async def delete(self, collection: str, document_id: str) -> bool:
        ...

    async def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        return len(await self.query(collection, filters))

    async def health_check(self) -> bool:
        return True


class MemoryDocumentStore(DocumentStore):
    """Process-local store for development and tests."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def get(self, collection, document_id):
        document = self._collection(collection).get(document_id)
        return copy.deepcopy(document) if document is not None else None

    async def set(self, collection, document_id, document):
        self._collection(collection)[document_id] = {**copy.deepcopy(document), "id": document_id}

    async def add(self, collection, document):
        document_id = uuid.uuid4().hex
        await self.set(collection, document_id, document)
        return document_id

    async def update(self, collection, document_id, patch):
        documents = self._collection(collection)
        if document_id not in documents:
            raise DocumentNotFoundError(collection, document_id)
        documents[document_id].update(copy.deepcopy(patch))
        return copy.deepcopy(documents[document_id])

    async def query(self, collection, filters=None):
        return [
            copy.deepcopy(document)
            for document in self._collection(collection).values()
            if _matches(document, filters)
        ]

    async def delete(self, collection, document_id):
        return self._collection(collection).pop(document_id, None) is not None


class RedisDocumentStore(DocumentStore):
    """Documents stored as JSON fields of one Redis hash per collection."""

    def __init__(self, redis_client: RedisClient, key_prefix: str = "doc"):
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _key(self, collection: str) -> str:
        return f"{self.key_prefix}:{collection}"

    async def get(self, collection, document_id):
        return await self.redis.hash_get_json(self._key(collection), document_id)

    async def set(self, collection, document_id, document):
        await self.redis.hash_set_json(self._key(collection), document_id, {**document, "id": document_id})

    async def add(self, collection, document):
        document_id = uuid.uuid4().hex
        await self.set(collection, document_id, document)
        return document_id

    async def update(self, collection, document_id, patch):
        current = await self.get(collection, document_id)
        if current is None:
            raise DocumentNotFoundError(collection, document_id)
        current.update(patch)
        await self.set(collection, document_id, current)
        return current

    async def query(self, collection, filters=None):
        documents = await self.redis.hash_get_all_json(self._key(collection))
        return [document for document in documents.values() if _matches(document, filters)]

    async def delete(self, collection, document_id):
        return await self.redis.hash_delete(self._key(collection), document_id)

    async def health_check(self) -> bool:
        return await self.redis.ping()
