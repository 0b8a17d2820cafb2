from fastapi import APIRouter, Depends, HTTPException, status

from crm_messaging.api.deps import get_pipeline
from crm_messaging.core.config import settings
from crm_messaging.schemas.connectivity import ConnectivityCheckRequest
from crm_messaging.workers.manager import PipelineManager

router = APIRouter()


@router.get("/")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "service": "crm-messaging-service",
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT
    }


@router.get("/detailed")
async def detailed_health_check(pipeline: PipelineManager = Depends(get_pipeline)):
    """Detailed health check including dependencies."""
    health_status = {
        "status": "healthy",
        "service": "crm-messaging-service",
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
        "checks": {}
    }

    # Document store check
    try:
        if await pipeline.store.health_check():
            health_status["checks"]["document_store"] = {"status": "healthy"}
        else:
            health_status["checks"]["document_store"] = {"status": "unhealthy"}
            health_status["status"] = "unhealthy"
    except Exception as e:
        health_status["checks"]["document_store"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "unhealthy"

    # Broker check
    if await pipeline.broker.health_check():
        health_status["checks"]["broker"] = {"status": "healthy", "message": "RabbitMQ connection OK"}
    else:
        health_status["checks"]["broker"] = {"status": "unhealthy", "error": "RabbitMQ not connected"}
        health_status["status"] = "unhealthy"

    # Pipeline check
    pipeline_status = await pipeline.get_status()
    health_status["checks"]["pipeline"] = {
        "status": "healthy" if pipeline_status["running"] else "unhealthy",
        **pipeline_status,
    }
    if not pipeline_status["running"]:
        health_status["status"] = "unhealthy"

    # Retry check
    try:
        retry_stats = await pipeline.get_retry_stats()
        health_status["checks"]["retries"] = {"status": "healthy", **retry_stats.model_dump()}
    except Exception as e:
        health_status["checks"]["retries"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "unhealthy"

    return health_status


@router.get("/connectivity")
async def connectivity_status(pipeline: PipelineManager = Depends(get_pipeline)):
    """Circuit state of every monitored endpoint."""
    monitor = pipeline.connectivity
    return {
        "monitor": monitor.stats.model_dump(),
        "endpoints": {
            url: status.model_dump() for url, status in monitor.get_all_stats().items()
        },
    }


@router.post("/connectivity/check")
async def check_connectivity(
    request: ConnectivityCheckRequest,
    pipeline: PipelineManager = Depends(get_pipeline)
):
    """Validate an endpoint before configuring it as a webhook target."""
    validation = await pipeline.connectivity.validate_before_configuration(request.url)
    current = pipeline.connectivity.get_status(request.url)
    return {
        "url": request.url,
        **validation.model_dump(),
        "status": current.model_dump() if current else None,
    }


@router.post("/connectivity/reset")
async def reset_circuit_breaker(
    request: ConnectivityCheckRequest,
    pipeline: PipelineManager = Depends(get_pipeline)
):
    """Close the circuit for an endpoint by hand."""
    if not pipeline.connectivity.reset_circuit_breaker(request.url):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No connectivity status for {request.url}"
        )
    return {"success": True, "url": request.url}
