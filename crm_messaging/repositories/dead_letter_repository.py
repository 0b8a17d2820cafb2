from typing import List, Optional

from crm_messaging.schemas.queue import DeadLetterRecord
from .base_repository import BaseRepository


class DeadLetterRepository(BaseRepository):
    """Dead-letter records. Written once, never updated."""

    collection = "failed_messages"

    async def add(self, record: DeadLetterRecord) -> str:
        return await self.create(record.model_dump(mode="json"))

    async def list_for(self, message_id: str) -> List[DeadLetterRecord]:
        documents = await self.get_all(filters={"message_id": message_id})
        records = []
        for document in documents:
            document.pop("id", None)
            records.append(DeadLetterRecord.model_validate(document))
        return sorted(records, key=lambda record: record.dlq_processed_at)

    async def latest_for(self, message_id: str) -> Optional[DeadLetterRecord]:
        records = await self.list_for(message_id)
        return records[-1] if records else None
