from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # OTEL
    OTEL_SERVICE_NAME: str = "chat-sync"
    OTEL_OTLP_GRPC_ENDPOINT: str = "otel-collector:4317"

    # Message Store
    MESSAGE_STORE_BACKEND: Literal["memory", "redis", "mongo"] = "memory"
    MESSAGE_MAX_TEXT_LENGTH: int = 1000
    MESSAGE_STORE_MAX_SEQUENCE_RETRIES: int = 3

    # Redis
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_MAX_CONNECTIONS: int = 40
    REDIS_KEY_PREFIX: str = "chat:room"

    # MongoDB
    MONGO_CLIENT_HOST: str = "mongodb://mongodb:27017"
    MONGO_CLIENT_MAX_POOL_SIZE: int = 50
    MONGO_CLIENT_MIN_POOL_SIZE: int = 10
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = 5_000
    MONGO_DB_NAME: str = "chat"

    # Room Channel
    ROOM_CHANNEL_MAX_PENDING_MESSAGES: int = 1000
    ROOM_CHANNEL_MAX_SUBSCRIBERS: int = 1000

    # Chat Service
    CHAT_SERVICE_CLEANUP_INTERVAL: float = 30.0

    # Rooms ('[{"room_id": "sports", "name": "Sports", "description": "..."}]')
    ROOMS: list[dict] = []
    REQUIRE_KNOWN_ROOMS: bool = False

    # ROUTER
    MAX_MESSAGE_SIZE: int = 10 * 1024  # 10KB
    CONNECTION_RATE_LIMIT_PER_SEC: int = 5
    CONNECTION_SEND_TIMEOUT: float = 0.5
    CONNECTION_MAX_CONSECUTIVE_FAILURES: int = 3

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")
