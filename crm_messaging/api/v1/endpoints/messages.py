from fastapi import APIRouter, Depends, HTTPException, status

from crm_messaging.api.deps import get_pipeline
from crm_messaging.core.logging import get_logger
from crm_messaging.repositories import MessageRepository
from crm_messaging.schemas.queue import OutboundMessageRequest, OutboundMessageResponse
from crm_messaging.workers.manager import PipelineManager

router = APIRouter()
logger = get_logger(__name__)


@router.post("/outbound", response_model=OutboundMessageResponse, status_code=status.HTTP_202_ACCEPTED)
async def queue_outbound_message(
    request: OutboundMessageRequest,
    pipeline: PipelineManager = Depends(get_pipeline)
):
    """
    Queue an agent reply for delivery.

    - **type**: text, image, video, audio or document
    - **content**: message text, or media URL/base64 for media types
    - **ticket_id** / **contact_id**: conversation and destination

    The message is recorded as pending before it is handed to the broker.
    """
    envelope = request.to_envelope()
    messages = MessageRepository(pipeline.store)

    try:
        await messages.mark_pending(envelope)
        published = await pipeline.broker.publish_outbound(envelope)
    except Exception as e:
        logger.error(f"Error queueing outbound message: {e}", message_id=envelope.id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to queue message"
        )

    if not published:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Message broker unavailable"
        )

    logger.info("Outbound message queued", message_id=envelope.id, ticket_id=envelope.ticket_id)
    return OutboundMessageResponse(message_id=envelope.id, status="queued")
