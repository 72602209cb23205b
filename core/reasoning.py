# =============================================================================
# RealtyVoice Agent - Reasoning Client
# =============================================================================
"""
Sends an utterance plus the trailing history window to the reasoning
service and validates the structured reply.

When a reply returns listings or marketplace items without a cart action, an
index-reference note such as

    [Available listings: 1. Marina View 2BR (p-101), 2. Harbour Loft (p-102)]

is recorded in history so that a later "add the second one" can be resolved
by the next reasoning call.
"""

import logging
from typing import Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError

from models import CatalogItem, StructuredReply, Turn
from .errors import ReasoningFailed

logger = logging.getLogger(__name__)


def _index_entries(items: Sequence[CatalogItem]) -> str:
    return ", ".join(f"{i}. {item.title} ({item.id})" for i, item in enumerate(items, start=1))


def build_index_notes(reply: StructuredReply) -> List[str]:
    """Index-reference notes for a reply, empty when a cart action was taken."""
    if reply.cart_action is not None:
        return []
    notes = []
    if reply.listings:
        notes.append(f"[Available listings: {_index_entries(reply.listings)}]")
    if reply.marketplace_items:
        notes.append(f"[Available marketplace items: {_index_entries(reply.marketplace_items)}]")
    return notes


class ReasoningClient:
    """HTTP client for the `/api/ai/receptionist` endpoint."""

    def __init__(
        self,
        base_url: str = "http://localhost:9876",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        path: str = "/api/ai/receptionist",
    ):
        self.base_url = base_url.rstrip("/")
        self.path = path
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_seconds)

    async def ask(self, message: str, history: Sequence[Turn]) -> StructuredReply:
        """
        Ask the reasoning service for a reply.

        Args:
            message: The user's utterance
            history: Trailing history window (already bounded by the caller)

        Returns:
            StructuredReply from the service
        """
        body: Dict[str, object] = {
            "message": message,
            "history": [turn.to_wire() for turn in history],
        }
        try:
            response = await self._client.post(self.path, json=body)
        except httpx.HTTPError as e:
            raise ReasoningFailed(f"Reasoning request failed: {e}") from e

        if response.status_code != 200:
            raise ReasoningFailed(
                f"Reasoning service error: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            reply = StructuredReply.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ReasoningFailed(f"Invalid reasoning reply: {e}") from e

        # The service reports its own failures as a 200 with intent "error"
        if reply.intent == "error":
            raise ReasoningFailed(f"Reasoning service could not answer: {reply.message[:200]}")

        logger.debug(
            f"Reply: intent={reply.intent} listings={len(reply.listings)} "
            f"items={len(reply.marketplace_items)} cart_action={reply.cart_action is not None}"
        )
        return reply

    async def close(self) -> None:
        await self._client.aclose()
