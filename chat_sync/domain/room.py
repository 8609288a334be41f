from pydantic import BaseModel, ConfigDict, Field


class Room(BaseModel):
    """채팅방 메타데이터 (설정으로 생성, 코어에서는 읽기 전용)"""

    room_id: str = Field(..., min_length=1)
    name: str
    description: str = ""

    model_config = ConfigDict(frozen=True)
