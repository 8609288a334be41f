import asyncio
from unittest.mock import MagicMock, Mock

import pytest
import pytest_asyncio

from chat_sync.application.chat_service import ChatService
from chat_sync.application.message_store import InMemoryMessageStore


# 공통 Mock fixtures
@pytest.fixture
def mock_otel_manager():
    """OTEL Manager mock - 모든 테스트에서 사용"""
    mock = Mock()
    mock.tracer = Mock()
    mock.tracer.start_as_current_span = MagicMock()
    mock.messages_appended_counter = Mock()
    mock.send_latency_histogram = Mock()
    mock.active_subscriptions_counter = Mock()
    mock.lagged_subscriptions_counter = Mock()
    return mock


@pytest.fixture
def message_store(mock_otel_manager):
    """InMemoryMessageStore 인스턴스"""
    return InMemoryMessageStore(mock_otel_manager, max_text_length=100)


@pytest.fixture
def chat_service(mock_otel_manager, message_store):
    """ChatService 인스턴스 (cleanup worker 미실행)"""
    return ChatService(
        otel_manager=mock_otel_manager,
        message_store=message_store,
        max_pending_messages=10,
        max_subscribers=5,
        cleanup_interval=0.05,
    )


@pytest_asyncio.fixture()
async def cleanup_tasks():
    """테스트 후 남은 태스크 정리"""
    yield

    current = asyncio.current_task()
    tasks = [t for t in asyncio.all_tasks() if not t.done() and t is not current]
    for task in tasks:
        task.cancel()

    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
