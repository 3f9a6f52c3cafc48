"""
Main FastAPI application.
This is the entry point for the local chat server.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from branchchat.api.endpoints import chat, conversations, data
from branchchat.api.endpoints import settings as settings_router
from branchchat.core.config import settings
from branchchat.core.exceptions import (
    ChatError,
    DecryptionError,
    MissingCredentialError,
    NotFoundError,
    ProviderRequestError,
    RegenerateNotSupportedError,
    StreamBusyError,
)
from branchchat.core.logging import setup_logging
from branchchat.db.database import create_engine
from branchchat.services.chat_storage import ChatStorage
from branchchat.services.stream_orchestrator import ClientFactory, StreamOrchestrator


logger = logging.getLogger(__name__)


def create_app(
    storage: Optional[ChatStorage] = None,
    client_factory: Optional[ClientFactory] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        storage: Store to serve; defaults to one over settings.DATABASE_URL
        client_factory: Provider client factory for the orchestrator
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for startup and shutdown events.
        """
        setup_logging(settings.LOG_LEVEL)
        logger.info("Environment: %s", settings.ENVIRONMENT)

        store = storage or ChatStorage(create_engine())
        await store.initialize()
        app.state.storage = store
        app.state.orchestrator = StreamOrchestrator(store, client_factory)
        logger.info("Database initialized")

        yield

        logger.info("Shutting down...")
        await app.state.orchestrator.shutdown()
        await store.close()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.VERSION,
        description="Local-first branching chat over multiple AI providers",
        lifespan=lifespan
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_exception_handlers(app)

    # Include routers
    app.include_router(conversations.router)
    app.include_router(chat.router)
    app.include_router(settings_router.router)
    app.include_router(data.router)

    @app.get("/")
    async def root():
        """Root endpoint - health check"""
        return {
            "message": settings.APP_NAME,
            "version": settings.VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy"}

    return app


def _register_exception_handlers(app: FastAPI) -> None:
    def handler(status_code: int):
        async def handle(request: Request, exc: Exception):
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})
        return handle

    app.add_exception_handler(NotFoundError, handler(status.HTTP_404_NOT_FOUND))
    app.add_exception_handler(MissingCredentialError, handler(status.HTTP_400_BAD_REQUEST))
    app.add_exception_handler(DecryptionError, handler(status.HTTP_400_BAD_REQUEST))
    app.add_exception_handler(StreamBusyError, handler(status.HTTP_409_CONFLICT))
    app.add_exception_handler(ProviderRequestError, handler(status.HTTP_502_BAD_GATEWAY))
    app.add_exception_handler(RegenerateNotSupportedError, handler(status.HTTP_501_NOT_IMPLEMENTED))
    app.add_exception_handler(ChatError, handler(status.HTTP_400_BAD_REQUEST))


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("branchchat.main:app", host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
