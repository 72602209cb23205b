# =============================================================================
# RealtyVoice Agent - Shared Test Fixtures
# =============================================================================
"""
Fake devices, outputs and speech engines, plus factories for building a
fully wired VoiceAgent without audio hardware or network access.
"""

import io
import sys
import asyncio
from pathlib import Path
from typing import Callable, List, Optional
from unittest.mock import AsyncMock, Mock

import numpy as np
import pytest
import soundfile as sf

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from agent import VoiceAgent
from models import StructuredReply
from core.audio_graph import AudioGraph
from core.capture import CaptureController, Codec
from core.cart import CartStore, LeadClient, SideEffectHandler
from core.frames import FrameScheduler
from core.playback import PlaybackScheduler
from core.reasoning import ReasoningClient
from core.synthesis import SynthesisClient

WAV_CODEC = Codec("audio/wav", "WAV", "PCM_16")


# =============================================================================
# Fakes
# =============================================================================

class FakeStream:
    def __init__(self):
        self.started = 0
        self.stopped = 0
        self.closed = 0
        self.on_stop: Optional[Callable[[], None]] = None

    def start(self):
        self.started += 1

    def stop(self):
        self.stopped += 1
        # PortAudio may deliver a final block while stopping
        if self.on_stop is not None:
            self.on_stop()

    def close(self):
        self.closed += 1


class FakeInputDevice:
    """Input device whose blocks are pushed by the test."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.streams: List[FakeStream] = []
        self.callback: Optional[Callable[[np.ndarray], None]] = None
        self.opened_with = None

    def open(self, sample_rate, channels, blocksize, callback):
        if self.error is not None:
            raise self.error
        self.opened_with = (sample_rate, channels, blocksize)
        self.callback = callback
        stream = FakeStream()
        stream.start()
        self.streams.append(stream)
        return stream

    def emit(self, seconds: float = 0.25, sample_rate: int = 16000) -> None:
        t = np.arange(int(seconds * sample_rate)) / sample_rate
        block = (np.sin(2 * np.pi * 440 * t) * 8000).astype(np.int16).reshape(-1, 1)
        self.callback(block)

    @property
    def live_streams(self) -> int:
        return sum(1 for s in self.streams if s.closed == 0)


class FakeOutput:
    """AudioOutput whose playhead is moved by the test."""

    instances: List["FakeOutput"] = []

    def __init__(self, pcm: np.ndarray, sample_rate: int, fail: bool = False):
        self.duration = len(pcm) / float(sample_rate)
        self._position = 0.0
        self._ended = False
        self.fail = fail
        self.tap = None
        self.stop_count = 0
        FakeOutput.instances.append(self)

    @property
    def position(self) -> float:
        return self._position

    @property
    def ended(self) -> bool:
        return self._ended

    def seek(self, seconds: float) -> None:
        self._position = min(seconds, self.duration)

    def finish(self) -> None:
        self._position = self.duration
        self._ended = True

    def start(self, tap):
        from core.errors import PlaybackError
        if self.fail:
            raise PlaybackError("Could not open audio output")
        self.tap = tap

    def stop(self):
        self.stop_count += 1


class FakeSpeechEngine:
    """SpeechEngine that can replay word events automatically."""

    def __init__(self, auto: bool = True, fail: bool = False):
        self.auto = auto
        self.fail = fail
        self.spoken: List[str] = []
        self.stop_count = 0
        self.callbacks = None

    def speak(self, text, on_word, on_end, on_error):
        self.spoken.append(text)
        self.callbacks = (on_word, on_end, on_error)
        loop = asyncio.get_running_loop()
        if self.fail:
            loop.call_soon(on_error, RuntimeError("driver crashed"))
            return
        if self.auto:
            for _ in text.split():
                loop.call_soon(on_word)
            loop.call_soon(on_end)

    def stop(self):
        self.stop_count += 1


def wav_bytes(seconds: float = 0.5, sample_rate: int = 16000) -> bytes:
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    buf = io.BytesIO()
    sf.write(buf, (np.sin(2 * np.pi * 220 * t) * 0.3).astype(np.float32), sample_rate,
             format="WAV", subtype="PCM_16")
    return buf.getvalue()


def reply(message: str = "Here you go.", **kwargs) -> StructuredReply:
    return StructuredReply.model_validate({"message": message, **kwargs})


def listing(item_id: str, title: str, **kwargs) -> dict:
    return {"id": item_id, "title": title, **kwargs}


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def reset_fake_outputs():
    FakeOutput.instances.clear()
    yield
    FakeOutput.instances.clear()


@pytest.fixture
def graph():
    return AudioGraph()


@pytest.fixture
def frames():
    return FrameScheduler(frame_rate=500)


@pytest.fixture
def input_device():
    return FakeInputDevice()


@pytest.fixture
def mock_transcriber():
    transcriber = Mock()
    transcriber.transcribe = AsyncMock(return_value="find a 2 bedroom in the marina")
    transcriber.close = AsyncMock()
    return transcriber


@pytest.fixture
def mock_reasoning():
    client = Mock(spec=ReasoningClient)
    client.ask = AsyncMock(return_value=reply("Sure, let me help."))
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_synthesis():
    client = Mock(spec=SynthesisClient)
    client.synthesize = AsyncMock(return_value=wav_bytes())
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_leads():
    client = Mock(spec=LeadClient)
    client.create_lead = AsyncMock(return_value={"success": True})
    client.close = AsyncMock()
    return client


@pytest.fixture
def make_agent(graph, frames, input_device, mock_transcriber, mock_reasoning, mock_synthesis, mock_leads):
    """Factory for a VoiceAgent wired to fakes."""

    def _make(speech_engine=None, output_factory=FakeOutput, synthesis=mock_synthesis, reasoning=mock_reasoning, **kwargs):
        capture = CaptureController(graph, device=input_device, codec=WAV_CODEC)
        playback = PlaybackScheduler(
            graph,
            frames,
            speech_engine=speech_engine,
            output_factory=output_factory,
            reveal_ms_per_char=1,
            min_reveal_ms=20,
        )
        return VoiceAgent(
            capture=capture,
            transcriber=mock_transcriber,
            reasoning=reasoning,
            playback=playback,
            side_effects=SideEffectHandler(CartStore(), mock_leads),
            graph=graph,
            frames=frames,
            synthesis=synthesis,
            **kwargs,
        )

    return _make


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Spin the loop until `predicate()` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


