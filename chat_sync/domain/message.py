from datetime import datetime

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
)

DEFAULT_MAX_TEXT_LENGTH = 1000


class Message(BaseModel):
    """방 히스토리에 추가된 메시지 (id, timestamp는 MessageStore가 부여)"""

    id: int = Field(..., ge=1)
    room_id: str = Field(..., alias="roomId")
    username: str
    text: str
    timestamp: datetime

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
    )

    def to_wire(self) -> dict:
        """외부 전송/저장용 구조 (roomId, ISO-8601 timestamp)"""
        return self.model_dump(mode="json", by_alias=True)


class MessageDraft(BaseModel):
    """append 전 검증용 모델. 저장되지 않음"""

    room_id: str = Field(..., min_length=1)
    username: str
    text: str

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Username cannot be empty")
        return v

    @field_validator("text")
    @classmethod
    def validate_text(cls, v: str, info: ValidationInfo) -> str:
        if not v.strip():
            raise ValueError("Message cannot be empty")

        context = info.context or {}
        max_text_length = context.get("max_text_length", DEFAULT_MAX_TEXT_LENGTH)
        if len(v) > max_text_length:
            raise ValueError(f"Message exceeds {max_text_length} characters")
        return v
