import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

from chat_sync.application.chat_service import ChatService
from chat_sync.application.message_store import InMemoryMessageStore
from chat_sync.application.room_directory import RoomDirectory
from chat_sync.config import Settings
from chat_sync.routers.rooms import router as rooms_router
from chat_sync.routers.websocket import router as websocket_router


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        ROOMS=[
            {"room_id": "sports", "name": "Sports"},
            {"room_id": "general", "name": "General"},
        ],
        MAX_MESSAGE_SIZE=1024,
        MESSAGE_MAX_TEXT_LENGTH=100,
    )


@pytest.fixture
def message_store(mock_otel_manager, settings):
    return InMemoryMessageStore(
        mock_otel_manager, max_text_length=settings.MESSAGE_MAX_TEXT_LENGTH
    )


@pytest.fixture
def test_app(mock_otel_manager, message_store, settings):
    """테스트용 FastAPI 앱 (실제 ChatService + 메모리 저장소)"""
    app = FastAPI()
    app.include_router(rooms_router)
    app.include_router(websocket_router)

    app.state.is_draining = False
    app.state.settings = settings
    app.state.message_store = message_store
    app.state.room_directory = RoomDirectory.from_config(settings.ROOMS)
    app.state.chat_service = ChatService(
        otel_manager=mock_otel_manager,
        message_store=message_store,
        max_pending_messages=100,
        max_subscribers=10,
    )
    return app


@pytest.fixture
def client(test_app):
    """TestClient 인스턴스 (요청 간 같은 이벤트 루프 사용)"""
    with TestClient(test_app) as client:
        yield client
