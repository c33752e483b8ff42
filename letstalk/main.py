import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from letstalk.core.config import Settings, get_settings
from letstalk.core.errors import ConversationError
from letstalk.core.logging import configure_logging, get_logger, resolve_log_level
from letstalk.database.connection import MongoConnection
from letstalk.repositories.conversation_repository import ConversationRepository
from letstalk.repositories.message_repository import MessageRepository
from letstalk.routers.chat import router as chat_router
from letstalk.routers.conversations import router as conversations_router
from letstalk.utils.locks import KeyedLock
from letstalk.utils.realtime_bus import EventFanout, create_bus
from letstalk.utils.typing_registry import TypingRegistry
from letstalk.utils.websocket_manager import ConnectionManager


logger = get_logger("letstalk")


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = await app.state.mongo.connect()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    try:
        yield
    finally:
        await app.state.bus.close()
        await app.state.mongo.close()


async def conversation_error_handler(request: Request, exc: ConversationError) -> JSONResponse:
    level = logging.WARNING if exc.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "conversation.error",
        extra={"error": exc.kind, "conversation_id": exc.conversation_id, "path": request.url.path},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": exc.kind, "conversation_id": exc.conversation_id},
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    default_log_level = logging.DEBUG if settings.environment != "production" else logging.INFO
    configure_logging(
        level=resolve_log_level(settings.log_level, default=default_log_level),
        log_file=settings.log_file_path,
    )

    app = FastAPI(title="Lets_Talk conversations", lifespan=lifespan)

    app.state.mongo = MongoConnection(settings)
    app.state.bus = create_bus(settings.redis_url)
    app.state.connections = ConnectionManager()
    app.state.fanout = EventFanout(app.state.bus, app.state.connections)
    app.state.typing = TypingRegistry(ttl_seconds=settings.typing_ttl_seconds)
    app.state.locks = KeyedLock()

    app.add_exception_handler(ConversationError, conversation_error_handler)

    app.include_router(conversations_router)
    app.include_router(chat_router)

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok", "environment": settings.environment}

    return app


app = create_app()
