# =============================================================================
# RealtyVoice Agent - Receptionist Service
# =============================================================================
"""
Server side of the reasoning endpoint.

The LLM sees a short inventory summary and the recent conversation, and
answers in JSON with a message, search filters, an intent and optional cart
or lead instructions. Matching catalog items (with photos and contacts) are
then attached so the client can show them and resolve cart actions.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from models import CatalogItem, StructuredReply, WireTurn
from .llm_engine import LLMEngine

logger = logging.getLogger(__name__)

MAX_RESULTS = 4
INVENTORY_PREVIEW = 8
HISTORY_IN_PROMPT = 6
MAX_MESSAGE_CHARS = 500

ERROR_MESSAGE = "I'm having a brief moment. Could you try again?"

RECEPTIONIST_SYSTEM_PROMPT = """You are the RealtyVoice receptionist, a friendly and professional assistant for a property rental and household marketplace.

Keep answers short (2-3 sentences) because they are spoken aloud.

You can:
1. Search rental properties by city, budget, bedrooms and type
2. Search marketplace items by category, condition and maximum price
3. Add an item the user names (or refers to by number from an [Available ...] note) to their cart
4. Offer to connect an interested user with the listing agent

Respond ONLY with valid JSON:
{
  "message": "what you say to the user",
  "filters": {"city": null, "minRent": null, "maxRent": null, "beds": null, "type": null,
              "category": null, "maxPrice": null, "condition": null},
  "intent": "search | question | greeting | booking | cart | other",
  "shouldShowListings": true or false,
  "shouldShowMarketplace": true or false,
  "cartAction": {"action": "add", "itemType": "property | marketplace", "itemId": "id"} or null,
  "captureLeadInfo": {"name": null, "phone": null, "interested_in": null} or null
}

Rules:
- Any stated preference means shouldShowListings (or shouldShowMarketplace) is true, with filters extracted
- "the second one" refers to item 2 of the most recent [Available ...] note
- Use intent "booking" when the user wants a viewing or to contact the agent
- Convert budgets such as "under 2000" into numbers
"""


class ReceptionistFilters(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    city: Optional[str] = None
    min_rent: Optional[float] = Field(None, alias="minRent")
    max_rent: Optional[float] = Field(None, alias="maxRent")
    beds: Optional[int] = None
    type: Optional[str] = None
    category: Optional[str] = None
    max_price: Optional[float] = Field(None, alias="maxPrice")
    condition: Optional[str] = None


class ReceptionistDecision(BaseModel):
    """JSON body the LLM is instructed to produce."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: str = ""
    filters: ReceptionistFilters = Field(default_factory=ReceptionistFilters)
    intent: str = "other"
    show_listings: bool = Field(False, alias="shouldShowListings")
    show_marketplace: bool = Field(False, alias="shouldShowMarketplace")
    cart_action: Optional[Dict[str, Any]] = Field(None, alias="cartAction")
    capture_lead_info: Optional[Dict[str, Any]] = Field(None, alias="captureLeadInfo")


class Catalog:
    """Property and marketplace inventory loaded from a JSON file."""

    def __init__(self, properties: Optional[List[CatalogItem]] = None,
                 marketplace_items: Optional[List[CatalogItem]] = None):
        self.properties = properties or []
        self.marketplace_items = marketplace_items or []

    @classmethod
    def load(cls, path: str) -> "Catalog":
        catalog_file = Path(path)
        if not catalog_file.exists():
            logger.warning(f"Catalog not found at {path}; serving an empty inventory")
            return cls()
        data = json.loads(catalog_file.read_text(encoding="utf-8"))
        catalog = cls(
            properties=[CatalogItem.model_validate(row) for row in data.get("properties", [])],
            marketplace_items=[CatalogItem.model_validate(row) for row in data.get("marketplace_items", [])],
        )
        logger.info(
            f"Catalog loaded: {len(catalog.properties)} properties, "
            f"{len(catalog.marketplace_items)} marketplace items"
        )
        return catalog

    def find(self, item_id: str) -> Optional[CatalogItem]:
        for item in [*self.properties, *self.marketplace_items]:
            if item.id == item_id:
                return item
        return None

    def search_properties(self, f: ReceptionistFilters, limit: int = MAX_RESULTS) -> List[CatalogItem]:
        results = []
        for item in self.properties:
            extra = item.model_extra or {}
            if f.city and f.city.lower() not in (item.city or "").lower():
                continue
            if f.min_rent is not None and item.display_price < f.min_rent:
                continue
            if f.max_rent is not None and item.display_price > f.max_rent:
                continue
            if f.beds is not None and (extra.get("beds") or 0) < f.beds:
                continue
            if f.type and str(extra.get("type", "")).lower() != f.type.lower():
                continue
            results.append(item)
        return results[:limit]

    def search_marketplace(self, f: ReceptionistFilters, limit: int = MAX_RESULTS) -> List[CatalogItem]:
        results = []
        for item in self.marketplace_items:
            extra = item.model_extra or {}
            if f.city and f.city.lower() not in (item.city or "").lower():
                continue
            if f.max_price is not None and item.display_price > f.max_price:
                continue
            if f.category and str(extra.get("category", "")).lower() != f.category.lower():
                continue
            if f.condition and str(extra.get("condition", "")).lower() != f.condition.lower():
                continue
            results.append(item)
        return results[:limit]

    def inventory_summary(self) -> str:
        def line(item: CatalogItem) -> str:
            return f"- {item.id}: {item.title}, {item.city or 'n/a'}, {item.currency or 'AED'} {item.display_price:g}"

        parts = ["Properties:"]
        parts.extend(line(item) for item in self.properties[:INVENTORY_PREVIEW])
        parts.append("Marketplace items:")
        parts.extend(line(item) for item in self.marketplace_items[:INVENTORY_PREVIEW])
        return "\n".join(parts)


def build_receptionist_prompt(message: str, history: List[WireTurn], catalog: Catalog) -> str:
    history_text = "\n".join(f"{turn.role}: {turn.content}" for turn in history[-HISTORY_IN_PROMPT:])
    return (
        f"Inventory:\n{catalog.inventory_summary()}\n\n"
        f"Conversation history:\n{history_text}\n\n"
        f"User: {message}"
    )


def parse_decision(text: str) -> ReceptionistDecision:
    """Parse the LLM output, tolerating code fences around the JSON."""
    body = text.strip()
    if body.startswith("```"):
        body = body.strip("`")
        if body.lower().startswith("json"):
            body = body[4:]
    start, end = body.find("{"), body.rfind("}")
    if start == -1 or end == -1:
        raise ValueError("No JSON object in model output")
    return ReceptionistDecision.model_validate(json.loads(body[start:end + 1]))


class Receptionist:
    """Produces structured replies for the reasoning endpoint."""

    def __init__(self, llm: LLMEngine, catalog: Catalog):
        self.llm = llm
        self.catalog = catalog

    async def reply(self, message: str, history: List[WireTurn]) -> StructuredReply:
        """
        Answer one user message.

        Never raises: any failure yields a generic message with intent "error".
        """
        message = message.strip()[:MAX_MESSAGE_CHARS]
        prompt = build_receptionist_prompt(message, history, self.catalog)

        response = await self.llm.generate(
            prompt=prompt,
            system_prompt=RECEPTIONIST_SYSTEM_PROMPT,
            temperature=0.6,
            max_tokens=500,
            json_mode=True,
        )
        if not response.success:
            logger.error(f"Receptionist LLM failed: {response.error}")
            return StructuredReply(message=ERROR_MESSAGE, intent="error")

        try:
            decision = parse_decision(response.text)
        except (ValueError, ValidationError) as e:
            logger.error(f"Receptionist returned unusable JSON: {e}")
            return StructuredReply(message=ERROR_MESSAGE, intent="error")

        return self._assemble(decision)

    def _assemble(self, decision: ReceptionistDecision) -> StructuredReply:
        listings = self.catalog.search_properties(decision.filters) if decision.show_listings else []
        items = self.catalog.search_marketplace(decision.filters) if decision.show_marketplace else []

        cart_action = decision.cart_action if decision.cart_action and decision.cart_action.get("itemId") else None
        if cart_action:
            target = self.catalog.find(str(cart_action["itemId"]))
            if target is None:
                logger.warning(f"Cart action for unknown item {cart_action['itemId']}")
                cart_action = None
            elif target in self.catalog.marketplace_items:
                if target not in items:
                    items.append(target)
                cart_action["itemType"] = "marketplace"
            else:
                if target not in listings:
                    listings.append(target)
                cart_action["itemType"] = "property"

        return StructuredReply.model_validate({
            "message": decision.message or ERROR_MESSAGE,
            "intent": decision.intent if decision.message else "error",
            "listings": [item.model_dump() for item in listings],
            "marketplaceItems": [item.model_dump() for item in items],
            "cartAction": cart_action,
            "captureLeadInfo": decision.capture_lead_info,
        })
