"""
API dependencies for storage and stream orchestration.
These functions are used with FastAPI's Depends() for dependency injection.
"""
from fastapi import Request

from branchchat.services.chat_storage import ChatStorage
from branchchat.services.stream_orchestrator import StreamOrchestrator


def get_storage(request: Request) -> ChatStorage:
    """
    Dependency to get the application's local store.

    Usage in FastAPI endpoints:
        @router.get("/items")
        async def read_items(storage: ChatStorage = Depends(get_storage)):
            ...
    """
    return request.app.state.storage


def get_orchestrator(request: Request) -> StreamOrchestrator:
    """
    Dependency to get the long-lived stream orchestrator.

    Streams outlive the request that started them, so the orchestrator is
    created once per application rather than per request.
    """
    return request.app.state.orchestrator
