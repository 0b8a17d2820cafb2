"""Exception hierarchy for the messaging pipeline."""

from typing import Optional


class MessagingServiceError(Exception):
    """Base class for all service errors."""


class BrokerError(MessagingServiceError):
    """Raised for message broker failures."""


class BrokerConnectionError(BrokerError):
    """Raised when the broker cannot be reached after the allowed reconnects."""


class BrokerPublishError(BrokerError):
    """Raised when a message could not be handed to the broker."""


class DeliveryError(MessagingServiceError):
    """Base class for outbound delivery failures. Retriable unless permanent."""

    def __init__(self, message: str, message_id: Optional[str] = None):
        self.message_id = message_id
        super().__init__(message)


class DeliveryProviderError(DeliveryError):
    """The provider call failed (HTTP error, timeout, transport error)."""

    def __init__(self, message: str, status_code: Optional[int] = None, message_id: Optional[str] = None):
        self.status_code = status_code
        super().__init__(message, message_id=message_id)


class InvalidProviderResponseError(DeliveryError):
    """The provider answered without a usable message id."""


class PermanentDeliveryError(DeliveryError):
    """A failure that no amount of retrying will fix."""


class ContactNotFoundError(PermanentDeliveryError):
    """The destination contact does not exist or has no phone number."""


class DocumentStoreError(MessagingServiceError):
    """Raised for document store failures."""


class DocumentNotFoundError(DocumentStoreError):
    """Raised when updating a document that does not exist."""

    def __init__(self, collection: str, document_id: str):
        self.collection = collection
        self.document_id = document_id
        super().__init__(f"Document {collection}/{document_id} not found")
