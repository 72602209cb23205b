# =============================================================================
# RealtyVoice Agent - Whisper Speech-to-Text Engine
# =============================================================================
"""
Local speech-to-text using faster-whisper for CPU inference.

Backs the hosted `/api/ai/speech` endpoint and can stand in for the remote
transcription client (TRANSCRIPTION_BACKEND=local).
"""

import io
import os
import asyncio
import logging
from typing import Tuple

from .errors import TranscriptionFailed

logger = logging.getLogger(__name__)


class WhisperEngine:
    """
    Speech-to-Text engine using faster-whisper for local CPU inference.

    Features:
    - CPU-optimized inference using CTranslate2
    - Accepts encoded payloads (ogg/opus, flac, wav, webm) directly
    - Lazy model loading on first use
    """

    SUPPORTED_MODELS = [
        "tiny.en", "base.en", "small.en", "medium.en",
        "tiny", "base", "small", "medium", "large-v2", "large-v3",
        "distil-large-v3"
    ]

    def __init__(
        self,
        model_name: str = "base.en",
        device: str = "cpu",
        compute_type: str = "int8",
        language: str = "en"
    ):
        """
        Initialize the Whisper engine.

        Args:
            model_name: Name of the whisper model to use
            device: Device for inference
            compute_type: Quantization type for CPU (int8 recommended)
            language: Language code for transcription
        """
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self.language = language
        self.model = None
        self._initialized = False

    def initialize(self) -> bool:
        """
        Lazy initialization of the Whisper model.

        Returns:
            True if initialization successful, False otherwise
        """
        if self._initialized:
            return True

        try:
            from faster_whisper import WhisperModel

            logger.info(f"Loading Whisper model: {self.model_name}")
            logger.info(f"Device: {self.device}, Compute type: {self.compute_type}")

            self.model = WhisperModel(
                self.model_name,
                device=self.device,
                compute_type=self.compute_type,
                cpu_threads=os.cpu_count() or 4,
                num_workers=2
            )

            self._initialized = True
            logger.info("Whisper model loaded successfully")
            return True

        except ImportError as e:
            logger.error(f"faster-whisper not installed: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to initialize Whisper model: {e}")
            return False

    def transcribe_bytes(self, payload: bytes) -> Tuple[str, float]:
        """
        Transcribe an encoded audio payload.

        Args:
            payload: Encoded audio bytes

        Returns:
            Tuple of (transcription text, confidence score)
        """
        if not payload:
            return "", 0.0

        if not self._initialized and not self.initialize():
            raise TranscriptionFailed("Whisper model unavailable")

        try:
            segments, info = self.model.transcribe(
                io.BytesIO(payload),
                language=self.language,
                beam_size=5,
                best_of=5,
                temperature=0.0,
                vad_filter=True,
                vad_parameters=dict(
                    min_silence_duration_ms=500,
                    speech_pad_ms=400
                )
            )

            full_text = ""
            total_confidence = 0.0
            segment_count = 0

            for segment in segments:
                full_text += segment.text
                total_confidence += segment.avg_logprob
                segment_count += 1

        except Exception as e:
            logger.error(f"Transcription error: {e}")
            raise TranscriptionFailed(f"Whisper transcription failed: {e}") from e

        # Convert average log probability to a 0-1 confidence score
        avg_confidence = (total_confidence / segment_count) if segment_count > 0 else 0.0
        confidence_score = min(1.0, max(0.0, 1.0 + avg_confidence))

        logger.debug(f"Transcription: {full_text.strip()} (confidence {confidence_score:.2f})")
        return full_text.strip(), confidence_score

    async def transcribe(self, payload: bytes, mime_type: str) -> str:
        """Transcribe without blocking the event loop. Same contract as the HTTP client."""
        loop = asyncio.get_running_loop()
        text, _ = await loop.run_in_executor(None, self.transcribe_bytes, payload)
        return text

    def is_available(self) -> bool:
        """Check if the Whisper engine can be used."""
        try:
            from faster_whisper import WhisperModel  # noqa: F401
            return True
        except ImportError:
            return False

    def get_model_info(self) -> dict:
        """Get information about the loaded model."""
        return {
            "model_name": self.model_name,
            "device": self.device,
            "compute_type": self.compute_type,
            "initialized": self._initialized,
            "available": self.is_available()
        }

    async def close(self) -> None:
        self.model = None
        self._initialized = False
