class ChatSyncError(Exception):
    """chat-sync 기본 에러"""

    error_code: str = "internal_error"

    def __init__(self, message: str, error_code: str | None = None):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)


class ValidationError(ChatSyncError):
    """빈 메시지, 길이 초과, 빈 username 등 입력 검증 실패. 자동 재시도 금지"""

    error_code = "invalid_message"

    def __init__(self, message: str = "Invalid message", errors: list | None = None):
        self.errors = errors or []
        super().__init__(message)


class StorageError(ChatSyncError):
    """저장소 사용 불가 또는 저장 실패. send는 publish하지 않음"""

    error_code = "storage_unavailable"

    def __init__(
        self,
        message: str = "Storage unavailable",
        retry_after: float | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message)


class SequenceConflictError(StorageError):
    """다른 writer가 같은 방 로그에 먼저 추가했을 때 (캐시된 시퀀스가 낡음)"""

    def __init__(self, room_id: str, expected_id: int):
        self.room_id = room_id
        self.expected_id = expected_id
        super().__init__(f"Sequence conflict in room {room_id} at id {expected_id}")


class ServiceUnavailableError(StorageError):
    """서비스가 종료 중이거나 사용 불가능할 때"""

    def __init__(self, message: str = "Service is stopping"):
        super().__init__(message, retry_after=1.0)


class SubscriptionError(ChatSyncError):
    """방 채널을 구독할 수 없을 때. 핸들은 반환되지 않음"""

    error_code = "subscription_unavailable"


class SubscriptionLimitExceeded(SubscriptionError):
    """방 구독자 수 제한 초과"""

    def __init__(self, room_id: str, limit: int):
        self.room_id = room_id
        self.limit = limit
        super().__init__(f"Room {room_id} is full ({limit} subscribers)")


class SubscriptionLagError(SubscriptionError):
    """구독자가 너무 느려서 채널에서 제거됨. last_delivered_id 이후부터 재구독 필요"""

    error_code = "subscription_lagged"

    def __init__(self, room_id: str, last_delivered_id: int):
        self.room_id = room_id
        self.last_delivered_id = last_delivered_id
        super().__init__(
            f"Subscription to room {room_id} fell behind after id {last_delivered_id}"
        )


class RoomNotFoundError(ChatSyncError):
    error_code = "room_not_found"

    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"Room not found: {room_id}")
