import logging
from contextlib import asynccontextmanager
from datetime import datetime, UTC

from fastapi import FastAPI
from starlette import status
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from chat_sync.application.chat_service import ChatService
from chat_sync.application.message_store import InMemoryMessageStore, MessageStore
from chat_sync.application.room_directory import RoomDirectory
from chat_sync.config import Settings
from chat_sync.infrastructure.mongo import MongoMessageStore
from chat_sync.infrastructure.otel import OTELManager
from chat_sync.infrastructure.redis import RedisMessageStore
from chat_sync.routers.rooms import router as rooms_router
from chat_sync.routers.websocket import router as websocket_router

logger = logging.getLogger(__name__)


def create_message_store(settings: Settings, otel_manager: OTELManager) -> MessageStore:
    """MESSAGE_STORE_BACKEND 에 맞는 저장소 생성"""
    common = {
        "max_text_length": settings.MESSAGE_MAX_TEXT_LENGTH,
        "max_sequence_retries": settings.MESSAGE_STORE_MAX_SEQUENCE_RETRIES,
    }

    if settings.MESSAGE_STORE_BACKEND == "redis":
        return RedisMessageStore(
            otel_manager,
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            key_prefix=settings.REDIS_KEY_PREFIX,
            **common,
        )

    if settings.MESSAGE_STORE_BACKEND == "mongo":
        return MongoMessageStore(
            otel_manager,
            mongo_client_host=settings.MONGO_CLIENT_HOST,
            mongo_client_max_pool_size=settings.MONGO_CLIENT_MAX_POOL_SIZE,
            mongo_client_min_pool_size=settings.MONGO_CLIENT_MIN_POOL_SIZE,
            server_selection_timeout_ms=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
            db_name=settings.MONGO_DB_NAME,
            **common,
        )

    return InMemoryMessageStore(otel_manager, **common)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Chat Sync...")

    services_to_stop = []
    try:
        app.state.is_draining = False
        settings = Settings()
        app.state.settings = settings

        # OTel
        otel_manager = OTELManager(
            service_name=settings.OTEL_SERVICE_NAME,
            otlp_grpc_endpoint=settings.OTEL_OTLP_GRPC_ENDPOINT,
        )
        app.state.otel_manager = otel_manager
        services_to_stop.append(otel_manager)

        # Message Store
        message_store = create_message_store(settings, otel_manager)
        await message_store.start()
        app.state.message_store = message_store
        services_to_stop.append(message_store)

        # Rooms
        room_directory = RoomDirectory.from_config(settings.ROOMS)
        app.state.room_directory = room_directory
        logger.info(f"Loaded {len(room_directory)} rooms")

        # Chat Service
        chat_service = ChatService(
            otel_manager=otel_manager,
            message_store=message_store,
            max_pending_messages=settings.ROOM_CHANNEL_MAX_PENDING_MESSAGES,
            max_subscribers=settings.ROOM_CHANNEL_MAX_SUBSCRIBERS,
            cleanup_interval=settings.CHAT_SERVICE_CLEANUP_INTERVAL,
        )
        await chat_service.start()
        app.state.chat_service = chat_service
        services_to_stop.append(chat_service)

        logger.info("Application started successfully!")

        yield

    except Exception as e:
        logger.critical(f"Startup failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("Shutting down...")
        app.state.is_draining = True

        for service in reversed(services_to_stop):
            try:
                await service.stop()
            except Exception as e:
                logger.error(f"Error stopping service: {e}", exc_info=True)

        logger.info("Shutdown complete")


app = FastAPI(lifespan=lifespan)

# 미들웨어
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware)

# 라우터
app.include_router(rooms_router)
app.include_router(websocket_router)


@app.get("/health")
async def health_check_liveness():
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@app.get("/readiness")
async def health_check_readiness(request: Request):
    """종료(배포) 중이면 503"""
    if request.app.state.is_draining:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "shutting_down",
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )

    return {"status": "ready", "timestamp": datetime.now(UTC).isoformat()}
