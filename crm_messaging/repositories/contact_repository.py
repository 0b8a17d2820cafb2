from typing import Any, Dict, Optional

from .base_repository import BaseRepository


class ContactRepository(BaseRepository):
    """Read access to CRM contacts."""

    collection = "contacts"

    @staticmethod
    def phone_number(contact: Dict[str, Any]) -> Optional[str]:
        return contact.get("phone") or contact.get("number") or None
