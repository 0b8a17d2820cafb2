from fastapi import APIRouter, Depends, HTTPException, status
from typing import Optional

from crm_messaging.api.deps import get_pipeline
from crm_messaging.core.logging import get_logger
from crm_messaging.core.webhook_security import verify_webhook_api_key
from crm_messaging.schemas.queue import InboundWebhookEnvelope
from crm_messaging.schemas.webhook import DeduplicationStats, EvolutionWebhookPayload, WebhookResponse
from crm_messaging.workers.manager import PipelineManager

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "/evolution",
    response_model=WebhookResponse,
    dependencies=[Depends(verify_webhook_api_key)]
)
async def receive_evolution_webhook(
    payload: EvolutionWebhookPayload,
    pipeline: PipelineManager = Depends(get_pipeline)
):
    """
    Receive a webhook event from the Evolution API.

    Duplicates inside the event's dedup window are acknowledged and dropped;
    everything else is queued for asynchronous processing.
    """
    if not pipeline.dedup.should_process(payload.event, payload.instance, payload.data):
        return WebhookResponse(status="duplicate", message="Duplicate event filtered", event=payload.event)

    webhook = InboundWebhookEnvelope(event=payload.event, instance_id=payload.instance, data=payload.data)
    if not await pipeline.broker.publish_webhook(webhook):
        logger.error("Could not queue webhook", webhook_event=payload.event, instance=payload.instance)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Message broker unavailable"
        )

    return WebhookResponse(status="accepted", message="Webhook queued for processing", event=payload.event)


@router.get("/deduplication/stats", response_model=DeduplicationStats)
async def deduplication_stats(pipeline: PipelineManager = Depends(get_pipeline)):
    return pipeline.dedup.get_stats()


@router.get("/deduplication/cache")
async def deduplication_cache(
    limit: Optional[int] = 50,
    pipeline: PipelineManager = Depends(get_pipeline)
):
    """Most repeated cache entries first."""
    return {"entries": pipeline.dedup.get_cache_info(limit=limit)}


@router.post("/deduplication/reset-stats")
async def reset_deduplication_stats(pipeline: PipelineManager = Depends(get_pipeline)):
    pipeline.dedup.reset_stats()
    return {"success": True, "message": "Deduplication stats reset"}


@router.delete("/deduplication/cache")
async def clear_deduplication_cache(pipeline: PipelineManager = Depends(get_pipeline)):
    pipeline.dedup.clear_cache()
    return {"success": True, "message": "Deduplication cache cleared"}
