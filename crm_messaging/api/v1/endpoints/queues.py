from fastapi import APIRouter, Depends, HTTPException, status
from typing import Optional

from crm_messaging.api.deps import get_pipeline
from crm_messaging.core.events import RecordingEventSink
from crm_messaging.core.exceptions import BrokerError
from crm_messaging.core.logging import get_logger
from crm_messaging.schemas.queue import RetryStats
from crm_messaging.workers.manager import PipelineManager

router = APIRouter()
logger = get_logger(__name__)


@router.get("/stats")
async def queue_stats(pipeline: PipelineManager = Depends(get_pipeline)):
    """Depth and consumer count of every work queue and dead-letter queue."""
    stats = await pipeline.get_queue_stats()
    return {
        "queues": {name: info.model_dump() if info else None for name, info in stats.items()},
        "pipeline": await pipeline.get_status(),
    }


@router.get("/retry-stats", response_model=RetryStats)
async def retry_stats(pipeline: PipelineManager = Depends(get_pipeline)):
    return await pipeline.get_retry_stats()


@router.post("/dlq/{message_id}/reprocess")
async def reprocess_dead_letter(message_id: str, pipeline: PipelineManager = Depends(get_pipeline)):
    """Send a dead-lettered message back through the pipeline at attempt 0."""
    if not await pipeline.reprocess_dead_letter(message_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Message {message_id} not found in dead letter"
        )
    logger.info("Dead-lettered message queued for reprocessing", message_id=message_id)
    return {"success": True, "message_id": message_id, "status": "retrying"}


@router.post("/{queue_name}/purge")
async def purge_queue(queue_name: str, pipeline: PipelineManager = Depends(get_pipeline)):
    try:
        purged = await pipeline.purge_queue(queue_name)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except BrokerError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    logger.warning("Queue purged by operator", queue=queue_name, purged=purged)
    return {"success": True, "queue": queue_name, "purged": purged}


@router.get("/events")
async def recent_events(
    limit: Optional[int] = 100,
    kind: Optional[str] = None,
    pipeline: PipelineManager = Depends(get_pipeline)
):
    """Most recent pipeline events, newest last."""
    sink = pipeline.events
    if not isinstance(sink, RecordingEventSink):
        return {"events": []}
    events = sink.by_kind(kind) if kind else sink.recent()
    if limit:
        events = events[-limit:]
    return {"events": [event.to_dict() for event in events]}
