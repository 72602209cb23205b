# =============================================================================
# RealtyVoice Agent - Runtime Configuration
# =============================================================================
"""
Pydantic settings for the voice agent and its hosted services.
Values come from the environment (a .env file is loaded by main.py).
"""

import os
import logging
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class CaptureSettings(BaseModel):
    """Microphone capture parameters."""
    sample_rate: int = Field(16000, ge=8000, le=48000, description="Capture sample rate (Hz)")
    channels: int = Field(1, ge=1, le=2, description="Capture channels")
    chunk_ms: int = Field(250, ge=20, le=2000, description="Buffered block interval (ms)")
    max_seconds: float = Field(30.0, gt=0, description="Natural release after this many seconds")


class PlaybackSettings(BaseModel):
    """Playback, reveal and animation parameters."""
    frame_rate: float = Field(60.0, gt=0, le=240, description="Per-tick sampling rate (Hz)")
    reveal_ms_per_char: float = Field(50.0, gt=0, description="Timed reveal duration per character")
    min_reveal_ms: float = Field(2000.0, ge=0, description="Minimum timed reveal duration")
    fft_size: int = Field(128, description="Analyser transform size")
    smoothing: float = Field(0.8, ge=0.0, le=1.0, description="Analyser time smoothing")


class AgentSettings(BaseModel):
    """Complete configuration for the voice agent client."""
    api_base_url: str = Field("http://localhost:9876", description="Base URL of the hosted services")
    http_timeout_seconds: float = Field(30.0, gt=0)
    history_window: int = Field(10, ge=1, le=50, description="Trailing turns sent to reasoning")
    transcription_backend: str = Field("remote", description="'remote' or 'local'")
    whisper_model: str = Field("base.en")
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    playback: PlaybackSettings = Field(default_factory=PlaybackSettings)

    @classmethod
    def from_env(cls) -> "AgentSettings":
        """Build settings from environment variables."""
        settings = cls(
            api_base_url=os.getenv("VOICE_API_BASE_URL", "http://localhost:9876"),
            http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
            history_window=int(os.getenv("HISTORY_WINDOW", "10")),
            transcription_backend=os.getenv("TRANSCRIPTION_BACKEND", "remote").lower(),
            whisper_model=os.getenv("WHISPER_MODEL", "base.en"),
            capture=CaptureSettings(
                sample_rate=int(os.getenv("CAPTURE_SAMPLE_RATE", "16000")),
                chunk_ms=int(os.getenv("CAPTURE_CHUNK_MS", "250")),
                max_seconds=float(os.getenv("MAX_CAPTURE_SECONDS", "30")),
            ),
            playback=PlaybackSettings(
                frame_rate=float(os.getenv("FRAME_RATE", "60")),
            ),
        )
        logger.debug(f"Agent settings: {settings.model_dump()}")
        return settings


class ServiceSettings(BaseModel):
    """Configuration for the hosted collaborator services."""
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "gemma3:1b"
    llm_timeout_seconds: float = 3.5
    enable_gemini_fallback: bool = True
    gemini_api_key: Optional[str] = None
    whisper_model: str = "base.en"
    catalog_path: str = "data/catalog.json"
    database_url: str = "sqlite:///data/leads.db"
    max_tts_chars: int = 2000

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        """Build service settings from environment variables."""
        return cls(
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
            ollama_model=os.getenv("OLLAMA_MODEL", "gemma3:1b"),
            llm_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "3.5")),
            enable_gemini_fallback=_env_bool("ENABLE_GEMINI_FALLBACK", "true"),
            gemini_api_key=os.getenv("GEMINI_API_KEY"),
            whisper_model=os.getenv("WHISPER_MODEL", "base.en"),
            catalog_path=os.getenv("CATALOG_PATH", "data/catalog.json"),
            database_url=os.getenv("DATABASE_URL", "sqlite:///data/leads.db"),
        )
