from fastapi import APIRouter

from .endpoints import health, messages, webhooks, queues

api_router = APIRouter()

api_router.include_router(messages.router, prefix="/messages", tags=["messages"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(queues.router, prefix="/queues", tags=["queues"])
api_router.include_router(health.router, prefix="/health", tags=["health"])
