# =============================================================================
# RealtyVoice Agent - Gemini Fallback Engine
# =============================================================================
"""
Google Gemini integration used by the receptionist when the local model is
unavailable, slow or returns nothing usable. Single attempt per request.
"""

import os
import time
import asyncio
import logging
from typing import Any, Dict, List, Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class GeminiResponse:
    """Response from Gemini API."""
    text: str
    tokens_used: int
    latency_ms: float
    success: bool
    error: Optional[str] = None


ROLE_LABELS = {"user": "User", "agent": "Assistant", "assistant": "Assistant", "system": "Note"}


class GeminiFallback:
    """
    Gemini API fallback for the receptionist.

    The SDK call is blocking, so it runs in the default executor. JSON mode
    asks the model for an `application/json` response body.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: str = "gemini-2.0-flash",
        temperature: float = 0.4,
    ):
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        self.model_name = model_name
        self.temperature = temperature
        self._genai = None
        self._initialized = False

        if not self.api_key:
            logger.warning("GEMINI_API_KEY not set - fallback will be unavailable")

    def initialize(self) -> bool:
        """
        Configure the Gemini client.

        Returns:
            True if initialization successful, False otherwise
        """
        if self._initialized:
            return True
        if not self.api_key:
            logger.error("Cannot initialize Gemini - no API key")
            return False

        try:
            import google.generativeai as genai

            genai.configure(api_key=self.api_key)
            self._genai = genai
            self._initialized = True
            logger.info(f"Gemini fallback initialized with model: {self.model_name}")
            return True
        except ImportError as e:
            logger.error(f"google-generativeai not installed: {e}")
            return False

    def _model(self, system_prompt: Optional[str], json_mode: bool):
        generation_config: Dict[str, Any] = {
            "temperature": self.temperature,
            "top_p": 0.95,
            "max_output_tokens": 1024,
        }
        if json_mode:
            generation_config["response_mime_type"] = "application/json"
        return self._genai.GenerativeModel(
            model_name=self.model_name,
            system_instruction=system_prompt,
            generation_config=generation_config,
        )

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        conversation_history: Optional[List[Dict[str, str]]] = None,
        json_mode: bool = False,
    ) -> GeminiResponse:
        """
        Generate a response using Gemini.

        Args:
            prompt: User prompt
            system_prompt: System instructions
            conversation_history: Previous turns as {role, content}
            json_mode: Request a JSON response body

        Returns:
            GeminiResponse with the generated text
        """
        start_time = time.time()

        if not self.initialize():
            return GeminiResponse(text="", tokens_used=0, latency_ms=0, success=False,
                                  error="Gemini not initialized")

        full_prompt = self.build_prompt(prompt, conversation_history)
        try:
            model = self._model(system_prompt, json_mode)
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(None, model.generate_content, full_prompt)
            text = response.text
        except Exception as e:  # the SDK raises a wide range of google.api_core errors
            latency_ms = (time.time() - start_time) * 1000
            logger.error(f"Gemini generation error: {e}")
            return GeminiResponse(text="", tokens_used=0, latency_ms=latency_ms, success=False, error=str(e))

        latency_ms = (time.time() - start_time) * 1000
        return GeminiResponse(
            text=text,
            tokens_used=self._count_tokens(text),
            latency_ms=latency_ms,
            success=True,
        )

    @staticmethod
    def build_prompt(prompt: str, conversation_history: Optional[List[Dict[str, str]]]) -> str:
        """Flatten history and the current message into one prompt string."""
        parts = []
        for turn in conversation_history or []:
            role = ROLE_LABELS.get(turn.get("role", "user"), "User")
            parts.append(f"{role}: {turn.get('content', '')}")
        parts.append(f"User: {prompt}")
        parts.append("Assistant:")
        return "\n".join(parts)

    def _count_tokens(self, text: str) -> int:
        # Rough estimation: ~4 chars per token
        return len(text) // 4

    def is_available(self) -> bool:
        """Check if Gemini fallback is available."""
        if not self.api_key:
            return False
        try:
            import google.generativeai  # noqa: F401
            return True
        except ImportError:
            return False

    def get_status(self) -> Dict[str, Any]:
        return {
            "model": self.model_name,
            "api_key_set": bool(self.api_key),
            "initialized": self._initialized,
            "available": self.is_available(),
        }
