# =============================================================================
# RealtyVoice Agent - Audio Analysis Graph
# =============================================================================
"""
Shared signal-processing context with analyser taps for visualization.

One graph instance is owned by the agent and injected into the capture
controller, the playback scheduler and the visualizers. The playback analyser
is created lazily on first use and lives until dispose(); microphone
analysers are created per capture session and released with it.

Analysers only expose frequency/amplitude data. Nothing in the pipeline makes
control decisions from them.
"""

import logging
import threading
from typing import Hashable, Optional, Set

import numpy as np

from models import ConversationState
from .errors import PlaybackError

logger = logging.getLogger(__name__)


def to_mono_float(samples: np.ndarray) -> np.ndarray:
    """Convert raw PCM blocks (int16/int32/float, mono or multi-channel) to mono float32."""
    data = np.asarray(samples)
    if data.dtype == np.int16:
        data = data.astype(np.float32) / 32768.0
    elif data.dtype == np.int32:
        data = data.astype(np.float32) / 2147483648.0
    else:
        data = data.astype(np.float32)
    if data.ndim > 1:
        data = data.mean(axis=1)
    return data


class Analyser:
    """
    Frequency analyser over the most recent `fft_size` samples.

    Mirrors the behaviour of a browser analyser node: Blackman window, FFT
    magnitudes smoothed over time, decibels mapped onto 0-255. Samples are
    pushed from audio threads, so the buffer is guarded by a lock.
    """

    def __init__(
        self,
        fft_size: int = 128,
        smoothing: float = 0.8,
        min_db: float = -100.0,
        max_db: float = -30.0,
        name: str = "analyser",
    ):
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise ValueError(f"fft_size must be a power of two >= 32, got {fft_size}")
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_db = min_db
        self.max_db = max_db
        self.name = name
        self.closed = False

        self._buffer = np.zeros(fft_size, dtype=np.float32)
        self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float64)
        self._window = np.blackman(fft_size)
        self._lock = threading.Lock()

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, samples: np.ndarray) -> None:
        """Feed a block of samples. Ignored once the analyser is closed."""
        if self.closed:
            return
        data = to_mono_float(samples)
        if data.size == 0:
            return
        with self._lock:
            if data.size >= self.fft_size:
                self._buffer[:] = data[-self.fft_size:]
            else:
                self._buffer = np.roll(self._buffer, -data.size)
                self._buffer[-data.size:] = data

    def byte_frequency_data(self) -> np.ndarray:
        """Smoothed spectrum as uint8 values, one per frequency bin."""
        with self._lock:
            frame = self._buffer.copy()
        spectrum = np.abs(np.fft.rfft(frame * self._window))[: self.frequency_bin_count]
        spectrum /= self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * spectrum

        with np.errstate(divide="ignore"):
            db = 20.0 * np.log10(self._smoothed)
        scaled = (db - self.min_db) * (255.0 / (self.max_db - self.min_db))
        return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255).astype(np.uint8)

    def level(self) -> float:
        """Mean normalised magnitude in [0, 1]."""
        return float(self.byte_frequency_data().mean() / 255.0)

    def close(self) -> None:
        self.closed = True
        with self._lock:
            self._buffer[:] = 0.0
        self._smoothed[:] = 0.0


class AudioGraph:
    """
    Process-wide processing context, owned and disposed explicitly.

    The context and its permanent playback analyser are created on first
    need. Each output source may be connected to the playback analyser once;
    a second connect is a programming error and raises PlaybackError.
    """

    def __init__(self, fft_size: int = 128, smoothing: float = 0.8):
        self.fft_size = fft_size
        self.smoothing = smoothing
        self._playback_analyser: Optional[Analyser] = None
        self._mic_analysers: Set[Analyser] = set()
        self._connected: Set[Hashable] = set()
        self.contexts_created = 0

    # -------------------------------------------------------------------------
    # Context lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._playback_analyser is not None

    def ensure(self) -> Analyser:
        """Create the context and playback analyser if needed; return the analyser."""
        if self._playback_analyser is None:
            self._playback_analyser = Analyser(
                fft_size=self.fft_size,
                smoothing=self.smoothing,
                name="playback",
            )
            self.contexts_created += 1
            logger.debug("Audio graph context created")
        return self._playback_analyser

    @property
    def playback_analyser(self) -> Analyser:
        return self.ensure()

    def dispose(self) -> None:
        """Close every analyser and drop all connections."""
        for analyser in list(self._mic_analysers):
            analyser.close()
        self._mic_analysers.clear()
        self._connected.clear()
        if self._playback_analyser is not None:
            self._playback_analyser.close()
            self._playback_analyser = None
            logger.debug("Audio graph disposed")

    # -------------------------------------------------------------------------
    # Microphone analysers
    # -------------------------------------------------------------------------

    def create_mic_analyser(self) -> Analyser:
        self.ensure()
        analyser = Analyser(fft_size=self.fft_size, smoothing=self.smoothing, name="microphone")
        self._mic_analysers.add(analyser)
        return analyser

    def release_mic_analyser(self, analyser: Analyser) -> None:
        analyser.close()
        self._mic_analysers.discard(analyser)

    @property
    def mic_analyser(self) -> Optional[Analyser]:
        """The live microphone analyser, if a capture session holds one."""
        for analyser in self._mic_analysers:
            return analyser
        return None

    # -------------------------------------------------------------------------
    # Playback connections
    # -------------------------------------------------------------------------

    def is_connected(self, source: Hashable) -> bool:
        return source in self._connected

    def connect_playback(self, source: Hashable) -> Analyser:
        """Connect an output source to the playback analyser exactly once."""
        if source in self._connected:
            raise PlaybackError("Output already connected to playback analyser")
        analyser = self.ensure()
        self._connected.add(source)
        return analyser

    def disconnect_playback(self, source: Hashable) -> None:
        self._connected.discard(source)

    # -------------------------------------------------------------------------
    # Sampling
    # -------------------------------------------------------------------------

    def analyser_for(self, state: ConversationState) -> Optional[Analyser]:
        """Analyser that reflects the given state, or None for idle animation."""
        if state == ConversationState.LISTENING:
            return self.mic_analyser
        if state == ConversationState.SPEAKING and self._playback_analyser is not None:
            return self._playback_analyser
        return None
