# =============================================================================
# RealtyVoice Agent - Data Models
# =============================================================================
"""
Pydantic models for conversation state, reasoning replies, cart items and
lead payloads. Wire names (camelCase) are kept as aliases so payloads from
the hosted services validate directly.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ConversationState(str, Enum):
    """Voice agent states. Exactly one is active at any instant."""
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"


class TurnRole(str, Enum):
    """Author of a history entry."""
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class Turn(BaseModel):
    """Single entry in the conversation history."""
    role: TurnRole
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_wire(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class History(BaseModel):
    """Ordered conversation history for one agent lifetime."""
    turns: List[Turn] = Field(default_factory=list)

    def add_turn(self, role: TurnRole, content: str) -> Turn:
        """Append a turn and return it."""
        turn = Turn(role=role, content=content)
        self.turns.append(turn)
        return turn

    def discard(self, turn: Turn) -> bool:
        """Remove a specific turn (identity match). Returns True if removed."""
        for i, existing in enumerate(self.turns):
            if existing is turn:
                del self.turns[i]
                return True
        return False

    def window(self, size: int) -> List[Turn]:
        """Trailing `size` turns, the bounded payload sent for reasoning."""
        if size <= 0:
            return []
        return list(self.turns[-size:])

    def to_wire(self, size: int) -> List[Dict[str, str]]:
        return [turn.to_wire() for turn in self.window(size)]

    def get_transcript(self) -> str:
        """Get the full conversation transcript."""
        labels = {TurnRole.USER: "User", TurnRole.AGENT: "Agent", TurnRole.SYSTEM: "Note"}
        return "\n".join(f"[{labels[t.role]}]: {t.content}" for t in self.turns)

    def __len__(self) -> int:
        return len(self.turns)


# =============================================================================
# Reasoning Replies
# =============================================================================

class Contact(BaseModel):
    """Agent or seller attached to a catalog item."""
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    whatsapp_number: Optional[str] = None


class Photo(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: str


class CatalogItem(BaseModel):
    """A property listing or marketplace item returned with a reply."""
    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    price: Optional[float] = None
    rent: Optional[float] = None
    currency: Optional[str] = None
    city: Optional[str] = None
    agent_id: Optional[str] = None
    seller_id: Optional[str] = None
    agent: Optional[Contact] = None
    seller: Optional[Contact] = None
    property_photos: List[Photo] = Field(default_factory=list)
    household_item_photos: List[Photo] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("property_photos", "household_item_photos", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return v or []

    @property
    def display_price(self) -> float:
        if self.rent is not None:
            return self.rent
        return self.price or 0.0

    @property
    def image_url(self) -> Optional[str]:
        photos = self.property_photos or self.household_item_photos
        return photos[0].url if photos else None

    @property
    def contact(self) -> Optional[Contact]:
        return self.agent or self.seller


class CartAction(BaseModel):
    """Cart instruction embedded in a reasoning reply."""
    model_config = ConfigDict(populate_by_name=True)

    action: str
    item_id: str = Field(..., alias="itemId")
    item_type: str = Field("property", alias="itemType")

    @field_validator("item_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("item_type", mode="before")
    @classmethod
    def default_type(cls, v: Any) -> str:
        return v or "property"


class LeadCapture(BaseModel):
    """Contact details the reasoning service extracted from the user."""
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    phone: Optional[str] = None
    interested_in: Optional[str] = None


class StructuredReply(BaseModel):
    """Reply from the reasoning service."""
    model_config = ConfigDict(populate_by_name=True)

    message: str = ""
    listings: List[CatalogItem] = Field(default_factory=list)
    marketplace_items: List[CatalogItem] = Field(default_factory=list, alias="marketplaceItems")
    cart_action: Optional[CartAction] = Field(None, alias="cartAction")
    intent: Optional[str] = None
    lead_capture: Optional[LeadCapture] = Field(
        None,
        validation_alias=AliasChoices("leadCapture", "captureLeadInfo", "lead_capture"),
        serialization_alias="leadCapture",
    )

    @field_validator("listings", "marketplace_items", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return v or []

    @property
    def all_items(self) -> List[CatalogItem]:
        return [*self.listings, *self.marketplace_items]


# =============================================================================
# Cart and Leads
# =============================================================================

class CartItemType(str, Enum):
    PROPERTY = "property"
    MARKETPLACE = "marketplace"


class CartItem(BaseModel):
    """Item saved to the cart. Keyed by (type, id)."""
    model_config = ConfigDict(populate_by_name=True)

    type: CartItemType
    id: str
    title: str
    price: float
    currency: str = "AED"
    image: Optional[str] = None
    contact_phone: Optional[str] = Field(None, alias="contactPhone")
    contact_name: Optional[str] = Field(None, alias="contactName")
    city: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.type, self.id)


class LeadRequest(BaseModel):
    """Payload for the lead-creation endpoint."""
    agent_id: Optional[str] = None
    message: Optional[str] = None
    source: str = "ai_voice"
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    property_id: Optional[str] = None


# =============================================================================
# Hosted Service Requests
# =============================================================================

class WireTurn(BaseModel):
    role: str
    content: str


class ReceptionistRequest(BaseModel):
    """Request body for the reasoning service."""
    message: str = ""
    history: List[WireTurn] = Field(default_factory=list)


class SpeechRequest(BaseModel):
    """Request body for the synthesis service."""
    text: str = ""


class APIResponse(BaseModel):
    """Standard API response."""
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
