from typing import List, Optional

from crm_messaging.schemas.queue import RetryRecord, RetryStatus
from .base_repository import BaseRepository


class RetryRepository(BaseRepository):
    """Retry bookkeeping, one document per message id."""

    collection = "retry_records"

    async def get(self, message_id: str) -> Optional[RetryRecord]:
        document = await self.get_by_id(message_id)
        if not document:
            return None
        document.pop("id", None)
        return RetryRecord.model_validate(document)

    async def save(self, record: RetryRecord) -> None:
        await self.upsert(record.message_id, record.model_dump(mode="json"))

    async def list_retrying(self) -> List[RetryRecord]:
        documents = await self.get_all(filters={"status": RetryStatus.RETRYING.value})
        records = []
        for document in documents:
            document.pop("id", None)
            records.append(RetryRecord.model_validate(document))
        return records
