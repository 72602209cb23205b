# =============================================================================
# RealtyVoice Agent - Cart & Lead Side Effects
# =============================================================================
"""
Side effects of a successful reasoning reply.

- A `cartAction` of "add" is resolved against the items returned with the
  same reply and saved to the cart.
- A booking intent (or extracted contact details) posts a lead for the
  agent/seller of the first returned item. Lead capture runs in the
  background and never affects the conversation.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

import httpx

from models import (
    CartItem,
    CartItemType,
    CatalogItem,
    LeadRequest,
    StructuredReply,
)

logger = logging.getLogger(__name__)


class CartStore:
    """In-memory cart. Adding an existing (type, id) is a no-op."""

    def __init__(self):
        self._items: Dict[tuple, CartItem] = {}

    def add(self, item: CartItem) -> bool:
        if item.key in self._items:
            return False
        self._items[item.key] = item
        logger.info(f"Added to cart: {item.title} ({item.type.value} {item.id})")
        return True

    def remove(self, item_id: str, item_type: Optional[CartItemType] = None) -> int:
        """Remove by id (optionally limited to one type). Returns the count removed."""
        keys = [
            key for key in self._items
            if key[1] == item_id and (item_type is None or key[0] == item_type)
        ]
        for key in keys:
            del self._items[key]
        return len(keys)

    def clear(self) -> None:
        self._items.clear()

    def items(self) -> List[CartItem]:
        return list(self._items.values())

    def total(self) -> float:
        return sum(item.price for item in self._items.values())

    def __contains__(self, key: tuple) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)


class LeadClient:
    """Posts leads to the `/api/leads` endpoint."""

    def __init__(
        self,
        base_url: str = "http://localhost:9876",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        path: str = "/api/leads",
    ):
        self.base_url = base_url.rstrip("/")
        self.path = path
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_seconds)

    async def create_lead(self, lead: LeadRequest) -> dict:
        response = await self._client.post(self.path, json=lead.model_dump(exclude_none=True))
        response.raise_for_status()
        return response.json()

    async def close(self) -> None:
        await self._client.aclose()


def _resolve_type(reply: StructuredReply, target: CatalogItem, requested: str) -> CartItemType:
    try:
        return CartItemType(requested)
    except ValueError:
        if any(item is target for item in reply.marketplace_items):
            return CartItemType.MARKETPLACE
        return CartItemType.PROPERTY


def build_cart_item(reply: StructuredReply) -> Optional[CartItem]:
    """CartItem for the reply's add action, or None if it names no returned item."""
    action = reply.cart_action
    if action is None or action.action != "add":
        return None

    target = next((item for item in reply.all_items if item.id == action.item_id), None)
    if target is None:
        logger.warning(f"Cart action references unknown item {action.item_id}")
        return None

    contact = target.contact
    return CartItem(
        type=_resolve_type(reply, target, action.item_type),
        id=target.id,
        title=target.title,
        price=target.display_price,
        currency=target.currency or "AED",
        image=target.image_url,
        contact_phone=contact.whatsapp_number if contact else None,
        contact_name=contact.name if contact else None,
        city=target.city,
    )


def build_lead(reply: StructuredReply, query: str) -> Optional[LeadRequest]:
    """LeadRequest when the reply signals interest and an owner is known."""
    if reply.intent != "booking" and reply.lead_capture is None:
        return None

    first_listing = reply.listings[0] if reply.listings else None
    first_item = reply.marketplace_items[0] if reply.marketplace_items else None
    agent_id = (first_listing.agent_id if first_listing else None) or (
        first_item.seller_id if first_item else None
    )
    if not agent_id:
        return None

    captured = reply.lead_capture
    return LeadRequest(
        agent_id=agent_id,
        message=query,
        source="ai_voice",
        contact_name=captured.name if captured else None,
        contact_phone=captured.phone if captured else None,
        property_id=first_listing.id if first_listing else None,
    )


class SideEffectHandler:
    """Applies cart and lead side effects for each successful reply."""

    def __init__(self, cart: CartStore, leads: Optional[LeadClient] = None):
        self.cart = cart
        self.leads = leads
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def apply(self, reply: StructuredReply, query: str) -> Optional[CartItem]:
        """
        Apply side effects of `reply` to the user's `query`.

        Returns:
            The CartItem that was added, if any
        """
        added = None
        item = build_cart_item(reply)
        if item is not None and self.cart.add(item):
            added = item

        lead = build_lead(reply, query)
        if lead is not None and self.leads is not None:
            task = asyncio.get_running_loop().create_task(self._capture_lead(lead))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return added

    async def _capture_lead(self, lead: LeadRequest) -> None:
        try:
            await self.leads.create_lead(lead)
            logger.info(f"Lead captured for agent {lead.agent_id}")
        except (httpx.HTTPError, ValueError) as e:
            # Lead capture is best effort
            logger.warning(f"Lead capture failed: {e}")

    async def aclose(self) -> None:
        """Wait for in-flight lead posts, then close the lead client."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.leads is not None:
            await self.leads.close()
