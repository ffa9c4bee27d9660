"""
Configuration management for the restaurant phone concierge.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_AGENT_WS_URL = "wss://agent.deepgram.com/v1/agent/converse"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 8080
    log_level: str = "INFO"

    # Twilio
    # - when twilio_auth_token is set, inbound webhooks must carry a valid signature
    twilio_auth_token: str = ""

    # Deepgram Voice Agent
    deepgram_api_key: str = ""
    deepgram_agent_ws_url: str = DEFAULT_AGENT_WS_URL
    deepgram_think_provider: str = "open_ai"
    deepgram_think_model: str = "gpt-4o-mini"
    deepgram_speak_model: str = "aura-2-thalia-en"

    # Supabase (PostgREST). Both empty -> in-memory store.
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Restaurant / agent
    restaurant_name: str = "New Delhi Restaurant"
    agent_greeting: str = "Hi, thanks for calling! Can I get your name?"

    # Bridge behavior
    audio_buffer_chunks: int = 256
    require_booking_confirmation: bool = False

    # Stale-call reconciliation
    stale_call_minutes: int = 3
    reconcile_interval_seconds: float = 60.0

    @property
    def media_ws_url(self) -> str:
        """Get the media-stream WebSocket URL handed to Twilio."""
        return f"wss://{self.public_host}/twilio/media"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if bool(self.supabase_url) != bool(self.supabase_service_role_key):
            missing.append("SUPABASE_URL" if not self.supabase_url else "SUPABASE_SERVICE_ROLE_KEY")

        if self.audio_buffer_chunks <= 0:
            raise ConfigError(
                f"Invalid AUDIO_BUFFER_CHUNKS '{self.audio_buffer_chunks}'. Expected a positive integer."
            )

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            deepgram_agent_ws_url=self.deepgram_agent_ws_url,
            think_provider=self.deepgram_think_provider,
            think_model=self.deepgram_think_model,
            speak_model=self.deepgram_speak_model,
            restaurant_name=self.restaurant_name,
            audio_buffer_chunks=self.audio_buffer_chunks,
            stale_call_minutes=self.stale_call_minutes,
            reconcile_interval_seconds=self.reconcile_interval_seconds,
            require_booking_confirmation=self.require_booking_confirmation,
            persistence="supabase" if self.supabase_enabled else "memory",
            deepgram_key_set=bool(self.deepgram_api_key),
            twilio_signature_check=bool(self.twilio_auth_token),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 8080),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_agent_ws_url=os.getenv("DEEPGRAM_AGENT_WS_URL", DEFAULT_AGENT_WS_URL),
        deepgram_think_provider=os.getenv("DEEPGRAM_THINK_PROVIDER", "open_ai"),
        deepgram_think_model=os.getenv("DEEPGRAM_THINK_MODEL", "gpt-4o-mini"),
        deepgram_speak_model=os.getenv("DEEPGRAM_SPEAK_MODEL", "aura-2-thalia-en"),

        # Supabase
        supabase_url=os.getenv("SUPABASE_URL", "").rstrip("/"),
        supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),

        # Restaurant / agent
        restaurant_name=os.getenv("RESTAURANT_NAME", "New Delhi Restaurant"),
        agent_greeting=os.getenv("AGENT_GREETING", "Hi, thanks for calling! Can I get your name?"),

        # Bridge behavior
        audio_buffer_chunks=_get_int("AUDIO_BUFFER_CHUNKS", 256),
        require_booking_confirmation=_get_bool("REQUIRE_BOOKING_CONFIRMATION", False),

        # Reconciler
        stale_call_minutes=_get_int("STALE_CALL_MINUTES", 3),
        reconcile_interval_seconds=_get_float("RECONCILE_INTERVAL_SECONDS", 60.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
