# =============================================================================
# RealtyVoice Agent - Playback Scheduler
# =============================================================================
"""
Plays a spoken reply and publishes which word is being spoken.

Modes, tried in order:
    1. AUDIO         - synthesized audio played through an AudioOutput that is
                       connected once to the playback analyser. Each frame
                       publishes floor(position / duration * word_count).
    2. SPEECH_ENGINE - on-device speech; the index follows its word-boundary
                       events.
    3. TIMED_REVEAL  - no audio at all; words are revealed on a timer sized to
                       the text length.

Word timing assumes every word takes the same time, since the synthesis
service exposes no phoneme timings. Short words, long words and heavy
punctuation drift visibly; that is a known limitation.

Published indices never decrease. word_count is published exactly once, at
natural completion. close() stops everything synchronously so a new capture
can begin straight away.
"""

import io
import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional, Protocol

import numpy as np
import soundfile as sf

from .audio_graph import AudioGraph
from .errors import PlaybackError
from .frames import FrameScheduler
from .synthesis import SpeechEngine

logger = logging.getLogger(__name__)

WordIndexCallback = Callable[[int], None]


class PlaybackMode(str, Enum):
    AUDIO = "audio"
    SPEECH_ENGINE = "speech_engine"
    TIMED_REVEAL = "timed_reveal"


# =============================================================================
# Audio Output
# =============================================================================

class AudioOutput(Protocol):
    """A playable audio handle."""
    duration: float

    @property
    def position(self) -> float: ...

    @property
    def ended(self) -> bool: ...

    def start(self, tap: Callable[[np.ndarray], None]) -> None: ...

    def stop(self) -> None: ...


def decode_audio(audio: bytes) -> tuple:
    """Decode synthesized audio into (float32 frames x channels, sample_rate)."""
    try:
        data, sample_rate = sf.read(io.BytesIO(audio), dtype="float32", always_2d=True)
    except (sf.LibsndfileError, RuntimeError, ValueError) as e:
        raise PlaybackError("Could not decode synthesized audio", {"reason": str(e)}) from e
    if data.size == 0:
        raise PlaybackError("Synthesized audio is empty")
    return data, sample_rate


class SoundDeviceOutput:
    """Plays decoded PCM through a sounddevice OutputStream."""

    def __init__(self, pcm: np.ndarray, sample_rate: int, device: Optional[int] = None):
        self.pcm = pcm
        self.sample_rate = sample_rate
        self.device = device
        self.duration = len(pcm) / float(sample_rate)
        self._frame = 0
        self._ended = False
        self._stream = None

    @property
    def position(self) -> float:
        return self._frame / float(self.sample_rate)

    @property
    def ended(self) -> bool:
        return self._ended

    def start(self, tap: Callable[[np.ndarray], None]) -> None:
        try:
            import sounddevice as sd
        except OSError as e:
            raise PlaybackError("PortAudio library not found", {"reason": str(e)}) from e

        def _callback(outdata, frames, time_info, status):
            chunk = self.pcm[self._frame:self._frame + frames]
            outdata[:len(chunk)] = chunk
            outdata[len(chunk):] = 0
            self._frame += len(chunk)
            tap(chunk)
            if self._frame >= len(self.pcm):
                raise sd.CallbackStop

        def _finished():
            self._ended = True

        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.pcm.shape[1],
                dtype="float32",
                device=self.device,
                callback=_callback,
                finished_callback=_finished,
            )
            self._stream.start()
        except (sd.PortAudioError, OSError, ValueError) as e:
            self._stream = None
            raise PlaybackError("Could not open audio output", {"reason": str(e)}) from e

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.abort()
        finally:
            stream.close()


OutputFactory = Callable[[np.ndarray, int], AudioOutput]


# =============================================================================
# Sessions
# =============================================================================

class PlaybackSession:
    """One spoken reply. Exists only while the agent is speaking."""

    def __init__(
        self,
        text: str,
        on_word_index: WordIndexCallback,
        graph: AudioGraph,
        frames: FrameScheduler,
        reveal_ms_per_char: float = 50.0,
        min_reveal_ms: float = 2000.0,
    ):
        self.text = text
        self.words: List[str] = text.split()
        self.word_count = len(self.words)
        self.mode: Optional[PlaybackMode] = None
        self.done: asyncio.Future = asyncio.get_running_loop().create_future()

        self._on_word_index = on_word_index
        self._graph = graph
        self._frames = frames
        self._reveal_ms_per_char = reveal_ms_per_char
        self._min_reveal_ms = min_reveal_ms

        self._last_index = -1
        self._closed = False
        self._output: Optional[AudioOutput] = None
        self._frame_handle: Optional[int] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._engine: Optional[SpeechEngine] = None
        self._engine_words = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def output(self) -> Optional[AudioOutput]:
        return self._output

    @property
    def word_index(self) -> int:
        return max(self._last_index, 0)

    # -------------------------------------------------------------------------
    # Word index publishing
    # -------------------------------------------------------------------------

    def _publish(self, index: int) -> None:
        if self._closed or self.word_count == 0:
            return
        index = min(max(index, 0), self.word_count - 1)
        if index <= self._last_index:
            return
        self._last_index = index
        self._on_word_index(index)

    def _complete(self) -> None:
        if self._closed:
            return
        self._last_index = self.word_count
        self._on_word_index(self.word_count)
        self._teardown()
        if not self.done.done():
            self.done.set_result(True)
        logger.debug(f"Playback complete ({self.mode.value if self.mode else 'empty'})")

    # -------------------------------------------------------------------------
    # Mode 1: synthesized audio
    # -------------------------------------------------------------------------

    def play_audio(self, audio: bytes, output_factory: OutputFactory) -> None:
        pcm, sample_rate = decode_audio(audio)
        output = output_factory(pcm, sample_rate)
        if self._graph.is_connected(output):
            raise PlaybackError("Output already connected to playback analyser")
        analyser = self._graph.connect_playback(output)
        try:
            output.start(analyser.push)
        except PlaybackError:
            self._graph.disconnect_playback(output)
            raise

        self.mode = PlaybackMode.AUDIO
        self._output = output
        self._publish(0)
        self._frame_handle = self._frames.request_frame(self._audio_tick)

    def _audio_tick(self, now: float) -> None:
        self._frame_handle = None
        output = self._output
        if self._closed or output is None:
            return
        if output.ended:
            self._complete()
            return
        if output.duration > 0:
            progress = output.position / output.duration
            self._publish(int(progress * self.word_count))
        self._frame_handle = self._frames.request_frame(self._audio_tick)

    # -------------------------------------------------------------------------
    # Mode 2: on-device speech engine
    # -------------------------------------------------------------------------

    def speak_with_engine(self, engine: SpeechEngine) -> None:
        self.mode = PlaybackMode.SPEECH_ENGINE
        self._engine = engine
        engine.speak(self.text, self._on_engine_word, self._on_engine_end, self._on_engine_error)

    def _on_engine_word(self) -> None:
        if self._closed:
            return
        self._publish(self._engine_words)
        self._engine_words += 1

    def _on_engine_end(self) -> None:
        if self._closed:
            return
        self._engine = None
        self._complete()

    def _on_engine_error(self, error: Exception) -> None:
        if self._closed:
            return
        logger.warning(f"On-device speech failed, revealing text instead: {error}")
        self._engine = None
        self.reveal_timed()

    # -------------------------------------------------------------------------
    # Mode 3: timed reveal
    # -------------------------------------------------------------------------

    @property
    def reveal_step_seconds(self) -> float:
        total_ms = max(len(self.text) * self._reveal_ms_per_char, self._min_reveal_ms)
        return total_ms / 1000.0 / max(self.word_count, 1)

    def reveal_timed(self) -> None:
        self.mode = PlaybackMode.TIMED_REVEAL
        self._publish(0)
        self._schedule_reveal(max(self._last_index, 0) + 1)

    def _schedule_reveal(self, next_index: int) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.reveal_step_seconds, self._reveal_step, next_index)

    def _reveal_step(self, index: int) -> None:
        self._timer = None
        if self._closed:
            return
        if index >= self.word_count:
            self._complete()
            return
        self._publish(index)
        self._schedule_reveal(index + 1)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def _teardown(self) -> None:
        self._closed = True
        if self._frame_handle is not None:
            self._frames.cancel_frame(self._frame_handle)
            self._frame_handle = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        output, self._output = self._output, None
        if output is not None:
            try:
                output.stop()
            finally:
                self._graph.disconnect_playback(output)
        engine, self._engine = self._engine, None
        if engine is not None:
            engine.stop()

    def close(self) -> bool:
        """Stop playback immediately. Returns False if already finished or closed."""
        if self._closed:
            return False
        self._teardown()
        if not self.done.done():
            self.done.set_result(False)
        logger.debug("Playback cancelled")
        return True


class PlaybackScheduler:
    """Creates playback sessions and walks the fallback chain."""

    def __init__(
        self,
        graph: AudioGraph,
        frames: FrameScheduler,
        speech_engine: Optional[SpeechEngine] = None,
        output_factory: OutputFactory = SoundDeviceOutput,
        reveal_ms_per_char: float = 50.0,
        min_reveal_ms: float = 2000.0,
    ):
        self.graph = graph
        self.frames = frames
        self.speech_engine = speech_engine
        self.output_factory = output_factory
        self.reveal_ms_per_char = reveal_ms_per_char
        self.min_reveal_ms = min_reveal_ms

    def start(
        self,
        text: str,
        audio: Optional[bytes],
        on_word_index: WordIndexCallback,
    ) -> PlaybackSession:
        """
        Begin speaking `text`.

        Args:
            text: Reply text (defines the word count)
            audio: Synthesized audio, or None when synthesis failed
            on_word_index: Receives each newly published word index

        Returns:
            PlaybackSession whose `done` future resolves True on natural
            completion and False when closed early
        """
        session = PlaybackSession(
            text,
            on_word_index,
            self.graph,
            self.frames,
            reveal_ms_per_char=self.reveal_ms_per_char,
            min_reveal_ms=self.min_reveal_ms,
        )
        if session.word_count == 0:
            session._complete()
            return session

        if audio:
            try:
                session.play_audio(audio, self.output_factory)
                return session
            except PlaybackError as e:
                logger.warning(f"Audio playback failed: {e}")

        if self.speech_engine is not None:
            logger.info("Speaking with on-device engine")
            session.speak_with_engine(self.speech_engine)
            return session

        logger.info("No speech engine available, revealing text on a timer")
        session.reveal_timed()
        return session
