from typing import Any, Dict, List, Optional

from crm_messaging.core.document_store import DocumentStore
from crm_messaging.core.logging import get_logger

logger = get_logger(__name__)


class BaseRepository:
    """Base repository class with common operations over one collection."""

    collection: str = ""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get_by_id(self, document_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.store.get(self.collection, document_id)
        except Exception as e:
            logger.error(f"Error getting {self.collection}/{document_id}: {e}")
            raise

    async def get_by_field(self, field: str, value: Any) -> Optional[Dict[str, Any]]:
        documents = await self.get_all(filters={field: value})
        return documents[0] if documents else None

    async def get_all(self, filters: Dict[str, Any] = None) -> List[Dict[str, Any]]:
        try:
            return await self.store.query(self.collection, filters)
        except Exception as e:
            logger.error(f"Error querying {self.collection}: {e}")
            raise

    async def create(self, data: Dict[str, Any]) -> str:
        try:
            return await self.store.add(self.collection, data)
        except Exception as e:
            logger.error(f"Error creating document in {self.collection}: {e}")
            raise

    async def upsert(self, document_id: str, data: Dict[str, Any]) -> None:
        try:
            await self.store.set(self.collection, document_id, data)
        except Exception as e:
            logger.error(f"Error saving {self.collection}/{document_id}: {e}")
            raise

    async def update(self, document_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self.store.update(self.collection, document_id, data)
        except Exception as e:
            logger.error(f"Error updating {self.collection}/{document_id}: {e}")
            raise

    async def delete(self, document_id: str) -> bool:
        try:
            return await self.store.delete(self.collection, document_id)
        except Exception as e:
            logger.error(f"Error deleting {self.collection}/{document_id}: {e}")
            raise

    async def count(self, filters: Dict[str, Any] = None) -> int:
        try:
            return await self.store.count(self.collection, filters)
        except Exception as e:
            logger.error(f"Error counting {self.collection}: {e}")
            raise
