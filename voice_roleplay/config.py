from typing import Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Credential broker (server side only)
    openai_api_key: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8000

    # Realtime session
    realtime_model: str = "gpt-4o-realtime-preview-2025-06-03"
    realtime_base_url: str = "https://api.openai.com/v1/realtime"
    voice: str = "shimmer"
    credential_broker_url: str = "http://localhost:8000/session"
    credential_timeout: float = 10.0
    negotiation_timeout: float = 10.0

    # Transport
    stun_servers: list[str] = ["stun:stun.l.google.com:19302"]
    ice_gathering_timeout: float = 3.0  # seconds
    response_settle_delay: float = 0.5  # seconds
    wait_for_session_ack: bool = False

    # Audio devices (ffmpeg device names and formats)
    audio_sample_rate: int = 24000
    audio_input_device: str = "default"
    audio_input_format: str = "pulse"
    audio_output_device: Optional[str] = None
    audio_output_format: Optional[str] = None

    log_level: str = "INFO"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


def get_settings() -> Settings:
    """Get a settings instance read from the current environment."""
    return Settings()
