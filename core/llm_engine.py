# =============================================================================
# RealtyVoice Agent - LLM Engine with Hybrid Fallback
# =============================================================================
"""
Local LLM inference using Ollama with automatic Gemini fallback.

The receptionist asks for JSON replies; a slow or failed local call is
handed to Gemini once. There are no retries beyond that single fallback.
"""

import time
import asyncio
import logging
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field
from enum import Enum

import httpx

from .fallback import GeminiFallback

logger = logging.getLogger(__name__)


class LLMProvider(Enum):
    """Available LLM providers."""
    OLLAMA = "ollama"
    GEMINI = "gemini"
    NONE = "none"


@dataclass
class LLMResponse:
    """Response from the LLM engine."""
    text: str
    provider: LLMProvider
    latency_ms: float
    tokens_used: int
    success: bool
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def to_chat_messages(history: Optional[List[Dict[str, str]]]) -> List[Dict[str, str]]:
    """Map wire roles (user/agent/system) onto chat roles."""
    roles = {"agent": "assistant", "assistant": "assistant", "system": "system"}
    return [
        {"role": roles.get(turn.get("role", "user"), "user"), "content": turn.get("content", "")}
        for turn in history or []
    ]


class LLMEngine:
    """
    Hybrid LLM engine: Ollama first, Gemini when Ollama is missing, slow or
    failing.
    """

    def __init__(
        self,
        ollama_base_url: str = "http://localhost:11434",
        ollama_model: str = "gemma3:1b",
        timeout_seconds: float = 3.5,
        enable_fallback: bool = True,
        gemini_api_key: Optional[str] = None,
        gemini: Optional[GeminiFallback] = None,
    ):
        """
        Initialize the LLM engine.

        Args:
            ollama_base_url: Base URL for Ollama API
            ollama_model: Model to use with Ollama
            timeout_seconds: Latency threshold for fallback
            enable_fallback: Whether to enable Gemini fallback
            gemini_api_key: API key for Gemini
            gemini: Pre-built fallback (tests)
        """
        self.ollama_base_url = ollama_base_url
        self.ollama_model = ollama_model
        self.timeout_seconds = timeout_seconds
        self.enable_fallback = enable_fallback

        self._ollama_client = None
        self._ollama_available = False
        self._initialized = False
        self._gemini: Optional[GeminiFallback] = None
        if enable_fallback:
            self._gemini = gemini or GeminiFallback(api_key=gemini_api_key)

    async def initialize(self) -> bool:
        """
        Probe Ollama and prepare the fallback.

        Returns:
            True if at least one provider is available
        """
        if self._initialized:
            return True

        self._ollama_available = await self._check_ollama()
        if self._ollama_available:
            logger.info(f"Ollama connected: {self.ollama_model}")
        else:
            logger.warning("Ollama not available")

        gemini_ready = bool(self._gemini and self._gemini.initialize())
        if self.enable_fallback:
            logger.info("Gemini fallback ready" if gemini_ready else "Gemini fallback unavailable")

        self._initialized = self._ollama_available or gemini_ready
        return self._initialized

    async def _check_ollama(self) -> bool:
        try:
            import ollama
        except ImportError:
            logger.error("ollama package not installed")
            return False

        self._ollama_client = ollama.AsyncClient(host=self.ollama_base_url)
        try:
            listing = await self._ollama_client.list()
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError, OSError) as e:
            logger.error(f"Ollama connection error: {e}")
            return False

        available = [m.get("model") or m.get("name") or "" for m in listing.get("models", [])]
        base_name = self.ollama_model.split(":")[0]
        if any(self.ollama_model in m or m.startswith(base_name) for m in available):
            return True

        logger.warning(f"Model {self.ollama_model} not found. Available: {available}")
        return False

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        conversation_history: Optional[List[Dict[str, str]]] = None,
        temperature: float = 0.4,
        max_tokens: int = 1024,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Generate a response using the best available LLM.

        Args:
            prompt: User prompt
            system_prompt: System instructions
            conversation_history: Previous turns as {role, content}
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate
            json_mode: Ask the provider for a JSON body

        Returns:
            LLMResponse with the generated text
        """
        if not self._initialized:
            await self.initialize()

        if self._ollama_available:
            response = await self._generate_ollama(
                prompt, system_prompt, conversation_history, temperature, max_tokens, json_mode
            )
            if response.success and response.latency_ms <= self.timeout_seconds * 1000:
                return response
            if not response.success:
                logger.warning(f"Ollama failed: {response.error}")
            else:
                logger.warning(
                    f"Ollama latency {response.latency_ms:.0f}ms > "
                    f"threshold {self.timeout_seconds * 1000:.0f}ms"
                )
                if not self._gemini:
                    return response

        if self._gemini:
            logger.info("Falling back to Gemini")
            reply = await self._gemini.generate(
                prompt=prompt,
                system_prompt=system_prompt,
                conversation_history=conversation_history,
                json_mode=json_mode,
            )
            return LLMResponse(
                text=reply.text,
                provider=LLMProvider.GEMINI,
                latency_ms=reply.latency_ms,
                tokens_used=reply.tokens_used,
                success=reply.success,
                error=reply.error,
            )

        return LLMResponse(
            text="",
            provider=LLMProvider.NONE,
            latency_ms=0,
            tokens_used=0,
            success=False,
            error="No LLM provider available",
        )

    async def _generate_ollama(
        self,
        prompt: str,
        system_prompt: Optional[str],
        conversation_history: Optional[List[Dict[str, str]]],
        temperature: float,
        max_tokens: int,
        json_mode: bool,
    ) -> LLMResponse:
        import ollama

        start_time = time.time()
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(to_chat_messages(conversation_history))
        messages.append({"role": "user", "content": prompt})

        try:
            response = await asyncio.wait_for(
                self._ollama_client.chat(
                    model=self.ollama_model,
                    messages=messages,
                    format="json" if json_mode else "",
                    options={"temperature": temperature, "num_predict": max_tokens},
                ),
                timeout=self.timeout_seconds * 2,  # hard cap on the call itself
            )
        except asyncio.TimeoutError:
            latency_ms = (time.time() - start_time) * 1000
            return LLMResponse(text="", provider=LLMProvider.OLLAMA, latency_ms=latency_ms,
                               tokens_used=0, success=False, error=f"Timeout after {latency_ms:.0f}ms")
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError, OSError) as e:
            latency_ms = (time.time() - start_time) * 1000
            return LLMResponse(text="", provider=LLMProvider.OLLAMA, latency_ms=latency_ms,
                               tokens_used=0, success=False, error=str(e))

        latency_ms = (time.time() - start_time) * 1000
        text = response["message"]["content"] or ""
        return LLMResponse(
            text=text,
            provider=LLMProvider.OLLAMA,
            latency_ms=latency_ms,
            tokens_used=response.get("eval_count") or 0,
            success=bool(text.strip()),
            error=None if text.strip() else "Empty response",
            metadata={"model": self.ollama_model},
        )

    def get_status(self) -> Dict[str, Any]:
        """Get the current status of the LLM engine."""
        return {
            "initialized": self._initialized,
            "ollama": {
                "available": self._ollama_available,
                "base_url": self.ollama_base_url,
                "model": self.ollama_model,
            },
            "gemini": self._gemini.get_status() if self._gemini else {"enabled": False},
            "timeout_seconds": self.timeout_seconds,
        }
