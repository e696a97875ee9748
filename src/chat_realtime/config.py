from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    BROKER_URL: str = "ws://localhost:8080/ws"
    STOMP_HOST: str | None = None
    AUTH_TOKEN: str | None = None

    HEARTBEAT_OUTGOING_MS: int = 10_000
    HEARTBEAT_INCOMING_MS: int = 10_000
    CONNECT_TIMEOUT_SECONDS: float = 10.0

    RECONNECT_BASE_DELAY_SECONDS: float = 1.0
    RECONNECT_MAX_DELAY_SECONDS: float = 30.0
    RECONNECT_MAX_ATTEMPTS: int = 5

    SUBSCRIBE_REPLAY_DELAY_SECONDS: float = 0.05
    OUTBOX_REPLAY_DELAY_SECONDS: float = 0.05

    DEDUP_WINDOW_SECONDS: float = 1.0
    DEDUP_CAPACITY: int = 100

    SEND_RETRY_ATTEMPTS: int = 3
    SEND_RETRY_BASE_DELAY_SECONDS: float = 1.0
    CONNECTION_WAIT_SECONDS: float = 5.0

    UPLOAD_CHUNK_SIZE: int = 64 * 1024
    UPLOAD_MAX_FILE_SIZE: int = 50 * 1024 * 1024
    UPLOAD_CHUNK_DELAY_SECONDS: float = 0.02
    UPLOAD_ACCEPT_TIMEOUT_SECONDS: float = 5.0
    UPLOAD_COMPLETION_BASE_SECONDS: float = 30.0
    UPLOAD_COMPLETION_PER_MB_SECONDS: float = 20.0
    UPLOAD_DESTINATION: str = "/app/files.upload/{room_id}"

    TAIL_ROOMS: list[int] = []

    @property
    def heartbeat(self) -> tuple[int, int]:
        return self.HEARTBEAT_OUTGOING_MS, self.HEARTBEAT_INCOMING_MS

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
