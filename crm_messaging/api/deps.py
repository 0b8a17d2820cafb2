from fastapi import Request

from crm_messaging.workers.manager import PipelineManager


def get_pipeline(request: Request) -> PipelineManager:
    """The pipeline built at startup and kept on the application state."""
    return request.app.state.pipeline
