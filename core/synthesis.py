# =============================================================================
# RealtyVoice Agent - Speech Synthesis
# =============================================================================
"""
Text-to-speech sources for the playback scheduler.

- SynthesisClient: requests audio bytes from the `/api/ai/tts` service.
- Pyttsx3SpeechEngine: on-device speech with native word-boundary events,
  used when the service fails.
- LocalSynthesizer: renders speech to WAV bytes with pyttsx3; backs the
  hosted `/api/ai/tts` endpoint.
"""

import os
import asyncio
import logging
import tempfile
import threading
from pathlib import Path
from typing import Callable, Optional, Protocol

import httpx
import pyttsx3

from .errors import SynthesisFailed

logger = logging.getLogger(__name__)

PREFERRED_VOICE_HINTS = ("Natural", "Google", "Samantha")


class SynthesisClient:
    """HTTP client for the synthesis service."""

    def __init__(
        self,
        base_url: str = "http://localhost:9876",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        path: str = "/api/ai/tts",
    ):
        self.base_url = base_url.rstrip("/")
        self.path = path
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_seconds)

    async def synthesize(self, text: str) -> bytes:
        """Return raw audio bytes for `text` or raise SynthesisFailed."""
        try:
            response = await self._client.post(self.path, json={"text": text})
        except httpx.HTTPError as e:
            raise SynthesisFailed(f"Synthesis request failed: {e}") from e

        if response.status_code != 200:
            raise SynthesisFailed("Synthesis service error", status_code=response.status_code)
        if not response.content:
            raise SynthesisFailed("Synthesis service returned no audio")
        return response.content

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# On-device Speech
# =============================================================================

class SpeechEngine(Protocol):
    """On-device speech. Callbacks are delivered on the event loop thread."""

    def speak(
        self,
        text: str,
        on_word: Callable[[], None],
        on_end: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None: ...

    def stop(self) -> None: ...


def _pick_voice(engine) -> Optional[str]:
    for voice in engine.getProperty("voices") or []:
        languages = [str(lang) for lang in (getattr(voice, "languages", None) or [])]
        is_english = any("en" in lang for lang in languages) or "english" in voice.name.lower()
        if is_english and any(hint in voice.name for hint in PREFERRED_VOICE_HINTS):
            return voice.id
    return None


class Pyttsx3SpeechEngine:
    """
    pyttsx3 speech with word-boundary events.

    runAndWait() blocks, so each utterance runs on a worker thread and its
    events are marshalled back onto the loop.
    """

    def __init__(self, engine, rate: Optional[int] = None):
        self._engine = engine
        self._lock = threading.Lock()
        self._stopped = False
        if rate:
            self._engine.setProperty("rate", rate)
        voice_id = _pick_voice(self._engine)
        if voice_id:
            self._engine.setProperty("voice", voice_id)

    @classmethod
    def create(cls, rate: Optional[int] = None) -> Optional["Pyttsx3SpeechEngine"]:
        """Initialise the platform driver; None when no speech driver exists."""
        try:
            return cls(pyttsx3.init(), rate=rate)
        except (RuntimeError, OSError, ImportError) as e:
            logger.warning(f"On-device speech unavailable: {e}")
            return None

    def speak(
        self,
        text: str,
        on_word: Callable[[], None],
        on_end: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        loop = asyncio.get_running_loop()
        self._stopped = False

        def _post(fn, *args) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(fn, *args)

        def _run() -> None:
            tokens = []
            with self._lock:
                try:
                    tokens.append(self._engine.connect("started-word", lambda name, location, length: _post(on_word)))
                    self._engine.say(text)
                    self._engine.runAndWait()
                except Exception as e:  # driver errors surface as arbitrary exceptions
                    _post(on_error, e)
                    return
                finally:
                    for token in tokens:
                        self._engine.disconnect(token)
            if not self._stopped:
                _post(on_end)

        loop.run_in_executor(None, _run)

    def stop(self) -> None:
        self._stopped = True
        self._engine.stop()


class LocalSynthesizer:
    """Render text to WAV bytes with pyttsx3 (server side of the TTS endpoint)."""

    def __init__(self, rate: Optional[int] = None):
        self.rate = rate
        self._engine = None
        self._lock = threading.Lock()

    def _get_engine(self):
        if self._engine is None:
            try:
                self._engine = pyttsx3.init()
            except (RuntimeError, OSError, ImportError) as e:
                raise SynthesisFailed(f"No speech driver available: {e}") from e
            if self.rate:
                self._engine.setProperty("rate", self.rate)
        return self._engine

    def synthesize_sync(self, text: str) -> bytes:
        with self._lock:
            engine = self._get_engine()
            fd, path = tempfile.mkstemp(suffix=".wav")
            os.close(fd)
            try:
                engine.save_to_file(text, path)
                engine.runAndWait()
                audio = Path(path).read_bytes()
            finally:
                Path(path).unlink(missing_ok=True)
        if not audio:
            raise SynthesisFailed("Speech driver produced no audio")
        return audio

    async def synthesize(self, text: str) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.synthesize_sync, text)
