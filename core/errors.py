# =============================================================================
# RealtyVoice Agent - Error Taxonomy
# =============================================================================
"""
Domain exceptions for the voice pipeline.

Exception Hierarchy:
    VoiceAgentError (base)
    ├── CaptureError
    │   ├── PermissionDenied
    │   └── DeviceUnavailable
    ├── TranscriptionFailed
    ├── ReasoningFailed
    ├── SynthesisFailed
    └── PlaybackError

An empty capture is not an error: the capture controller returns an empty
payload and the orchestrator resolves straight back to idle.
"""

from typing import Any, Dict, Optional


class VoiceAgentError(Exception):
    """Base exception for all voice pipeline errors.

    Attributes:
        message: Human-readable error description
        details: Optional dict with additional error context
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class CaptureError(VoiceAgentError):
    """Microphone could not be acquired."""


class PermissionDenied(CaptureError):
    """Access to the input device was refused."""


class DeviceUnavailable(CaptureError):
    """No usable input device, or the device failed to open."""


class TranscriptionFailed(VoiceAgentError):
    """Transcription service failed or returned an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        details = {"status_code": status_code} if status_code else None
        super().__init__(message, details)
        self.status_code = status_code


class ReasoningFailed(VoiceAgentError):
    """Reasoning service failed or returned an unusable reply."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        details = {"status_code": status_code} if status_code else None
        super().__init__(message, details)
        self.status_code = status_code


class SynthesisFailed(VoiceAgentError):
    """Synthesis service failed. Recovered through the playback fallbacks."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        details = {"status_code": status_code} if status_code else None
        super().__init__(message, details)
        self.status_code = status_code


class PlaybackError(VoiceAgentError):
    """Audio could not be decoded, connected or played."""
