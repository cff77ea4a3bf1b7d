"""Application configuration for the signaling server."""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _default_media_codecs() -> list[dict[str, Any]]:
    return [
        {
            "kind": "audio",
            "mimeType": "audio/opus",
            "clockRate": 48000,
            "channels": 2,
        },
        {
            "kind": "video",
            "mimeType": "video/VP8",
            "clockRate": 90000,
            "parameters": {"x-google-start-bitrate": 1000},
        },
        {
            "kind": "video",
            "mimeType": "video/H264",
            "clockRate": 90000,
            "parameters": {
                "packetization-mode": 1,
                "profile-level-id": "42e01f",
                "level-asymmetry-allowed": 1,
            },
        },
    ]


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])

    listen_ip: str = Field(default="0.0.0.0")
    listen_port: int = Field(default=3000)
    log_level: str = Field(default="INFO")
    usage_log_interval: float = Field(default=30.0, ge=0)

    rtc_min_port: int = Field(default=10000, ge=1, le=65535)
    rtc_max_port: int = Field(default=10100, ge=1, le=65535)
    announced_ip: str = Field(default="127.0.0.1")
    enable_udp: bool = Field(default=True)
    enable_tcp: bool = Field(default=True)
    prefer_udp: bool = Field(default=True)
    initial_available_outgoing_bitrate: int = Field(default=1_000_000, ge=0)

    media_codecs: list[dict[str, Any]] = Field(default_factory=_default_media_codecs)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        """Allow comma-separated env values for CORS origins."""

        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _check_transport_options(self) -> "Settings":
        if self.rtc_min_port > self.rtc_max_port:
            raise ValueError("rtc_min_port must not exceed rtc_max_port")
        if not (self.enable_udp or self.enable_tcp):
            raise ValueError("at least one of enable_udp and enable_tcp must be set")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
