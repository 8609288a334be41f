import logging

from chat_sync.application.exceptions import RoomNotFoundError
from chat_sync.domain.room import Room

logger = logging.getLogger(__name__)


class RoomDirectory:
    """설정에서 읽은 방 목록 (읽기 전용)"""

    def __init__(self, rooms: list[Room] | None = None):
        self._rooms: dict[str, Room] = {}
        for room in rooms or []:
            if room.room_id in self._rooms:
                logger.warning(f"Duplicate room id ignored: {room.room_id}")
                continue
            self._rooms[room.room_id] = room

    @classmethod
    def from_config(cls, raw_rooms: list[dict]) -> "RoomDirectory":
        return cls([Room.model_validate(raw) for raw in raw_rooms])

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def list_rooms(self) -> list[Room]:
        return sorted(self._rooms.values(), key=lambda room: room.name)

    def get(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    def require(self, room_id: str) -> Room:
        """
        Raises:
            RoomNotFoundError: 등록되지 않은 방
        """
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFoundError(room_id)
        return room
