from enum import IntEnum


class WebSocketCloseCode(IntEnum):
    """
    룸 피드 WebSocket 종료 코드 (RFC 6455)

    RFC 6455: https://tools.ietf.org/html/rfc6455#section-7.4.1
    """

    NORMAL_CLOSURE = 1000  # 정상 종료
    GOING_AWAY = 1001  # 클라이언트 이탈
    PROTOCOL_ERROR = 1002  # accept 실패 등
    ABNORMAL_CLOSURE = 1006  # (내부용) 비정상 종료
    POLICY_VIOLATION = 1008  # 등록되지 않은 방
    INTERNAL_ERROR = 1011  # 히스토리 조회 실패, 내부 오류
    SERVICE_RESTART = 1012  # 서버 종료 중
    TRY_AGAIN_LATER = 1013  # 구독 거절, 구독자 지연(lag), 전송 지연

    @classmethod
    def get_reason(cls, code: int) -> str:
        reasons = {
            cls.NORMAL_CLOSURE: "Normal closure",
            cls.GOING_AWAY: "Client went away",
            cls.PROTOCOL_ERROR: "Protocol error",
            cls.POLICY_VIOLATION: "Unknown room",
            cls.INTERNAL_ERROR: "Internal server error",
            cls.SERVICE_RESTART: "Service restarting",
            cls.TRY_AGAIN_LATER: "Try again later",
        }
        return reasons.get(code, f"Unknown code: {code}")

    @classmethod
    def should_reconnect(cls, code: int) -> bool:
        """클라이언트가 (after_id와 함께) 재연결해야 하는지"""
        return code in {
            cls.SERVICE_RESTART,
            cls.TRY_AGAIN_LATER,
            cls.INTERNAL_ERROR,
            cls.ABNORMAL_CLOSURE,
        }
