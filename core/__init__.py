# =============================================================================
# RealtyVoice Agent - Core Module
# =============================================================================
"""
Core components for the RealtyVoice agent.

Modules:
- audio_graph: Shared analysis context and frequency analysers
- capture: Microphone capture sessions and codec selection
- transcription / whisper_engine: Remote and local speech-to-text
- reasoning: Receptionist client and index-reference notes
- synthesis / playback: Speech sources and the word-synchronised scheduler
- visualization: Orb and avatar renderers
- cart: Cart store and lead side effects
- llm_engine / fallback / receptionist / database: Hosted services
- rate_limit: Per-client limits for the hosted routes
"""

from .audio_graph import Analyser, AudioGraph
from .capture import CaptureController, CaptureSession, SoundDeviceInput
from .cart import CartStore, LeadClient, SideEffectHandler
from .database import LeadDatabase
from .fallback import GeminiFallback
from .frames import FrameScheduler
from .llm_engine import LLMEngine
from .playback import PlaybackScheduler, PlaybackSession
from .reasoning import ReasoningClient
from .receptionist import Catalog, Receptionist
from .synthesis import LocalSynthesizer, Pyttsx3SpeechEngine, SynthesisClient
from .transcription import TranscriptionClient
from .visualization import AvatarRenderer, OrbRenderer, Visualizer
from .whisper_engine import WhisperEngine

__all__ = [
    "Analyser",
    "AudioGraph",
    "CaptureController",
    "CaptureSession",
    "SoundDeviceInput",
    "CartStore",
    "LeadClient",
    "SideEffectHandler",
    "LeadDatabase",
    "GeminiFallback",
    "FrameScheduler",
    "LLMEngine",
    "PlaybackScheduler",
    "PlaybackSession",
    "ReasoningClient",
    "Catalog",
    "Receptionist",
    "LocalSynthesizer",
    "Pyttsx3SpeechEngine",
    "SynthesisClient",
    "TranscriptionClient",
    "AvatarRenderer",
    "OrbRenderer",
    "Visualizer",
    "WhisperEngine",
]
