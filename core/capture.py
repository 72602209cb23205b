# =============================================================================
# RealtyVoice Agent - Capture Controller
# =============================================================================
"""
Microphone capture sessions.

A CaptureSession owns the open input stream, its microphone analyser and the
PCM blocks buffered so far. Blocks arrive on the audio thread every
`chunk_ms` milliseconds, which bounds how long stop() waits for the last
block. On flush the blocks are encoded once into the best codec the local
libsndfile supports, tagged with its MIME type.

release() is idempotent: the device is stopped and closed exactly once, and
blocks delivered after that are dropped.
"""

import io
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence

import numpy as np
import soundfile as sf

from .audio_graph import Analyser, AudioGraph
from .errors import CaptureError, DeviceUnavailable, PermissionDenied

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Codec:
    """Encoding used for a captured payload."""
    mime_type: str
    format: str
    subtype: str


# Ordered by preference; WAV/PCM_16 is always available in libsndfile.
CODEC_PREFERENCES: Sequence[Codec] = (
    Codec("audio/ogg;codecs=opus", "OGG", "OPUS"),
    Codec("audio/flac", "FLAC", "PCM_16"),
    Codec("audio/wav", "WAV", "PCM_16"),
)


def select_codec(
    preferences: Sequence[Codec] = CODEC_PREFERENCES,
    check: Callable[[str, str], bool] = sf.check_format,
) -> Codec:
    """Return the first codec in `preferences` the encoder supports."""
    for codec in preferences:
        try:
            if check(codec.format, codec.subtype):
                return codec
        except (ValueError, TypeError):
            continue
    return preferences[-1]


# =============================================================================
# Input Devices
# =============================================================================

class InputStream(Protocol):
    def start(self) -> None: ...
    def stop(self) -> None: ...
    def close(self) -> None: ...


class InputDevice(Protocol):
    def open(
        self,
        sample_rate: int,
        channels: int,
        blocksize: int,
        callback: Callable[[np.ndarray], None],
    ) -> InputStream: ...


_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "not permitted")


def map_device_error(exc: Exception) -> CaptureError:
    """Translate a PortAudio/OS error into the capture taxonomy."""
    text = str(exc).lower()
    if any(marker in text for marker in _PERMISSION_MARKERS):
        return PermissionDenied("Microphone access was refused", {"reason": str(exc)})
    return DeviceUnavailable("Microphone is unavailable", {"reason": str(exc)})


class SoundDeviceInput:
    """Input device backed by a sounddevice (PortAudio) InputStream."""

    def __init__(self, device: Optional[int] = None, dtype: str = "int16"):
        self.device = device
        self.dtype = dtype

    def open(
        self,
        sample_rate: int,
        channels: int,
        blocksize: int,
        callback: Callable[[np.ndarray], None],
    ) -> InputStream:
        try:
            import sounddevice as sd
        except OSError as e:
            raise DeviceUnavailable("PortAudio library not found", {"reason": str(e)}) from e

        def _callback(indata, frames, time_info, status):  # sounddevice callback signature
            if status:
                logger.debug(f"Input stream status: {status}")
            callback(indata.copy())

        try:
            stream = sd.InputStream(
                samplerate=sample_rate,
                channels=channels,
                dtype=self.dtype,
                blocksize=blocksize,
                device=self.device,
                callback=_callback,
            )
            stream.start()
        except (sd.PortAudioError, OSError, ValueError) as e:
            raise map_device_error(e) from e
        return stream


# =============================================================================
# Sessions
# =============================================================================

class CaptureSession:
    """One microphone session. Exists only while the agent is listening."""

    def __init__(
        self,
        codec: Codec,
        sample_rate: int,
        channels: int,
        analyser: Analyser,
        on_release: Optional[Callable[["CaptureSession"], None]] = None,
    ):
        self.session_id = uuid.uuid4().hex
        self.codec = codec
        self.sample_rate = sample_rate
        self.channels = channels
        self.analyser = analyser
        self.stream: Optional[InputStream] = None
        self.release_count = 0
        self.discarded_blocks = 0

        self._on_release = on_release
        self._chunks: List[np.ndarray] = []
        self._open = True
        self._releasing = False
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._open and not self._releasing

    @property
    def buffered_bytes(self) -> int:
        with self._lock:
            return sum(chunk.nbytes for chunk in self._chunks)

    def on_block(self, block: np.ndarray) -> None:
        """Audio-thread entry point for one captured block."""
        with self._lock:
            if not self._open:
                self.discarded_blocks += 1
                return
            if block.size:
                self._chunks.append(block)
        self.analyser.push(block)

    def release(self, drain: bool = False) -> bool:
        """
        Stop and close the device. Returns False if already released.

        With drain=True, blocks delivered while the stream is stopping are
        still buffered; otherwise the buffer is closed before the stream stops.
        """
        with self._lock:
            if not self._open or self._releasing:
                return False
            self._releasing = True
            if not drain:
                self._open = False

        stream, self.stream = self.stream, None
        try:
            if stream is not None:
                try:
                    stream.stop()
                finally:
                    stream.close()
        finally:
            with self._lock:
                self._open = False
        self.release_count += 1
        if self._on_release:
            self._on_release(self)
        logger.debug(f"Capture session {self.session_id[:8]} released")
        return True

    def flush(self) -> bytes:
        """Release the device and return the encoded payload (b"" if nothing was captured)."""
        self.release(drain=True)
        with self._lock:
            chunks, self._chunks = self._chunks, []
        if not chunks:
            return b""
        return self._encode(np.concatenate(chunks))

    def _encode(self, audio: np.ndarray) -> bytes:
        buf = io.BytesIO()
        try:
            sf.write(
                buf,
                audio,
                self.sample_rate,
                format=self.codec.format,
                subtype=self.codec.subtype,
            )
        except (sf.LibsndfileError, RuntimeError, ValueError) as e:
            raise CaptureError("Failed to encode captured audio", {"codec": self.codec.mime_type}) from e
        return buf.getvalue()


class CaptureController:
    """
    Owns access to the input device.

    At most one session is live at a time; a second start() while one is open
    raises DeviceUnavailable.
    """

    def __init__(
        self,
        graph: AudioGraph,
        device: Optional[InputDevice] = None,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_ms: int = 250,
        codec: Optional[Codec] = None,
    ):
        self.graph = graph
        self.device = device or SoundDeviceInput()
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self._codec = codec
        self._active: Optional[CaptureSession] = None

    @property
    def codec(self) -> Codec:
        if self._codec is None:
            self._codec = select_codec()
            logger.info(f"Capture codec: {self._codec.mime_type}")
        return self._codec

    @property
    def blocksize(self) -> int:
        return max(1, int(self.sample_rate * self.chunk_ms / 1000))

    @property
    def active_session(self) -> Optional[CaptureSession]:
        return self._active

    def start(self) -> CaptureSession:
        """Acquire the microphone and begin buffering."""
        if self._active is not None and self._active.is_open:
            raise DeviceUnavailable("Input device already in use")

        analyser = self.graph.create_mic_analyser()
        session = CaptureSession(
            codec=self.codec,
            sample_rate=self.sample_rate,
            channels=self.channels,
            analyser=analyser,
            on_release=self._on_session_released,
        )
        try:
            session.stream = self.device.open(
                self.sample_rate, self.channels, self.blocksize, session.on_block
            )
        except CaptureError:
            self.graph.release_mic_analyser(analyser)
            raise

        self._active = session
        logger.info(f"Capture started ({session.session_id[:8]}, {self.codec.mime_type})")
        return session

    def _on_session_released(self, session: CaptureSession) -> None:
        self.graph.release_mic_analyser(session.analyser)
        if self._active is session:
            self._active = None
