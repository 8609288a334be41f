from pydantic import BaseModel, Field

from chat_sync.domain.message import Message
from chat_sync.domain.room import Room


class HistoryPage(BaseModel):
    """after_id 이후 메시지 한 페이지 (id 오름차순)"""

    messages: list[Message]
    has_more: bool
    last_id: int | None = None


class RoomsResponse(BaseModel):
    rooms: list[Room]


class SendMessageRequest(BaseModel):
    # 내용 검증은 MessageStore에서 함
    username: str
    text: str


class ErrorResponse(BaseModel):
    type: str = "error"
    code: str
    message: str
    retry_after: float | None = None


class HistoryEvent(BaseModel):
    type: str = "history"
    messages: list[Message] = Field(default_factory=list)


class MessageEvent(BaseModel):
    type: str = "message"
    message: Message
