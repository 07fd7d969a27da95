from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CatalogItem(BaseModel):
    code: str = ""
    name: str
    price: Optional[float] = None  # numeric, never a display string
    stock_quantity: float = 0
    group: str = ""

    @property
    def in_stock(self) -> bool:
        return self.stock_quantity > 0

    @property
    def availability(self) -> str:
        # Raw quantities never leave the catalog, only this label.
        return "available" if self.in_stock else "unavailable"

    @property
    def key(self) -> str:
        return self.code or self.name


class CartLine(BaseModel):
    code: str
    name: str
    quantity: int = 1
    price: Optional[float] = None
    in_stock: bool = False

    @property
    def subtotal(self) -> Optional[float]:
        if self.price is None:
            return None
        return round(self.price * self.quantity, 2)


class PendingDisambiguation(str, Enum):
    NONE = "none"
    VARIANT = "awaiting_variant_choice"
    COLOR = "awaiting_color_choice"
    OPTION = "awaiting_option_pick"


class ConversationSession(BaseModel):
    customer_id: str
    pending: PendingDisambiguation = PendingDisambiguation.NONE
    candidates: List[CatalogItem] = Field(default_factory=list)
    last_shown: List[CatalogItem] = Field(default_factory=list)
    variant_menu: List[str] = Field(default_factory=list)
    last_query: str = ""  # utterance that opened the current disambiguation
    last_topic_key: Optional[str] = None
    cart: List[CartLine] = Field(default_factory=list)
    transcript: List[Dict[str, Any]] = Field(default_factory=list)  # agent-mode chat turns
    updated_at: float = 0.0

    def reset_disambiguation(self) -> None:
        self.pending = PendingDisambiguation.NONE
        self.candidates = []
        self.variant_menu = []
        self.last_query = ""


class IntentKind(str, Enum):
    GREETING = "greeting"
    RESET = "reset"
    PICK_OPTION = "pick_option"
    CODE_LOOKUP = "code_lookup"
    SEARCH = "search"
    ASK_CLARIFY = "ask_clarify"
    VARIANT = "variant"
    COLOR = "color"
    PRICES_FOR_ALL_LISTED = "prices_for_all_listed"


class Intent(BaseModel):
    kind: IntentKind
    index: Optional[int] = None  # PickOption, 1-based
    code: Optional[str] = None  # CodeLookup
    hint: Optional[str] = None  # Search
    key: Optional[str] = None  # Variant
    value: Optional[str] = None  # Color


class InboundMessage(BaseModel):
    """One customer message extracted from a webhook delivery."""
    message_id: str
    customer_id: str
    type: str  # text | image | anything the transport sends
    text: str = ""
    media_id: Optional[str] = None
    mime_type: Optional[str] = None
    timestamp: Optional[str] = None


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ModelTurn(BaseModel):
    """One response of the tool-calling model: final text or tool requests."""
    text: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
