"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )
    call_api_key: str | None = Field(
        default=None,
        description="Optional API key required to initiate or terminate calls.",
    )

    # Twilio (Voice)
    twilio_account_sid: str | None = Field(default=None)
    twilio_auth_token: str | None = Field(default=None)
    twilio_from_number: str | None = Field(default=None, description="E.164, e.g. +1442...")
    twilio_say_voice: str = Field(default="Polly.Joanna")
    twilio_say_language: str = Field(default="en-US")
    twilio_greeting: str | None = Field(
        default="Connecting you to the AI assistant.",
        description="Spoken before the media stream opens. Empty disables it.",
    )
    call_ring_timeout_seconds: int = Field(default=30, ge=5, le=600)

    # Voice AI (ElevenLabs Conversational AI)
    voice_ai_agent_id: str | None = Field(default=None)
    voice_ai_api_key: str | None = Field(default=None)
    voice_ai_ws_url: str = Field(default="wss://api.elevenlabs.io/v1/convai/conversation")
    voice_ai_use_signed_url: bool = Field(
        default=False,
        description="If true, exchanges the API key for a signed URL before connecting.",
    )
    voice_ai_signed_url_endpoint: str = Field(
        default="https://api.elevenlabs.io/v1/convai/conversation/get-signed-url",
    )
    voice_ai_connect_timeout_seconds: float = Field(default=10.0, gt=0)
    voice_ai_max_reconnects: int = Field(default=3, ge=0)
    voice_ai_reconnect_backoff_seconds: float = Field(default=1.0, ge=0)

    # Media stream bridge
    bridge_idle_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Closes a bridge when either leg is silent for this long.",
    )
    bridge_fallback_message: str = Field(
        default=(
            "We're sorry, our assistant is not available right now. "
            "Please try again later. Goodbye."
        ),
    )

    # Session registry
    session_ttl_seconds: float = Field(default=3600.0, gt=0)
    session_sweep_interval_seconds: float = Field(default=60.0, gt=0)

    termination_timeout_seconds: float = Field(default=5.0, gt=0)

    # Conversation defaults used when a call request leaves them out
    default_script: str = Field(
        default="You are a helpful AI assistant. Be friendly and professional."
    )
    default_persona: str = Field(default="Professional, friendly, and helpful sales assistant")
    default_context: str = Field(default="This is an outbound sales call.")

    @field_validator("bridge_fallback_message")
    @classmethod
    def fallback_not_empty(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("Fallback message may not be empty.")
        return text


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
