"""
Pydantic models for the catalog snapshot, extraction results, draft order
cards and API request/response payloads.

Wire names follow the JSON contract the completion service is asked to
produce (camelCase `matchConfidence`, `unmatchedText`); Python code uses the
snake_case attribute names.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BeforeValidator, BaseModel, ConfigDict, Field, field_validator, model_validator


# ============================================
# ENUMS
# ============================================

class MatchConfidence(str, Enum):
    """Reliability of a client match"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"


class ItemStatus(str, Enum):
    """Resolution state of a line item"""
    CONFIRMED = "confirmed"
    AMBIGUOUS = "ambiguous"


class CardState(str, Enum):
    """Draft order card lifecycle"""
    PENDING = "pending"
    SAVED = "saved"


class TokenKind(str, Enum):
    """Classification of an unmatched word"""
    UNKNOWN_CLIENT = "unknown-client"
    UNKNOWN_PRODUCT = "unknown-product"


# Spellings the completion service may return (the catalog is Spanish-speaking)
CONFIDENCE_ALIASES = {
    "alto": MatchConfidence.HIGH,
    "alta": MatchConfidence.HIGH,
    "medio": MatchConfidence.MEDIUM,
    "media": MatchConfidence.MEDIUM,
    "bajo": MatchConfidence.LOW,
    "baja": MatchConfidence.LOW,
    "desconocido": MatchConfidence.UNKNOWN,
    "none": MatchConfidence.UNKNOWN,
}

STATUS_ALIASES = {
    "confirmado": ItemStatus.CONFIRMED,
    "ok": ItemStatus.CONFIRMED,
    "duda": ItemStatus.AMBIGUOUS,
    "dudoso": ItemStatus.AMBIGUOUS,
    "doubt": ItemStatus.AMBIGUOUS,
}

NULL_ID_SPELLINGS = {"", "null", "none", "undefined", "n/a"}


def _normalize_id(value: Any) -> Any:
    """Map the textual 'null' spellings an LLM produces to a real None."""
    if isinstance(value, str) and value.strip().lower() in NULL_ID_SPELLINGS:
        return None
    return value


OptionalId = Annotated[Optional[str], BeforeValidator(_normalize_id)]


# ============================================
# CATALOG SNAPSHOT
# ============================================

class CatalogClient(BaseModel):
    """Known client"""
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str
    name: str
    phone: Optional[str] = None


class CatalogVariant(BaseModel):
    """Known product variant"""
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str
    name: str
    price: float = 0.0


class CatalogProduct(BaseModel):
    """Known product with its ordered variants"""
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str
    name: str
    price: float = 0.0
    description: Optional[str] = None
    variants: List[CatalogVariant] = Field(default_factory=list)

    def get_variant(self, variant_id: Optional[str]) -> Optional[CatalogVariant]:
        if variant_id is None:
            return None
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None


class CatalogSnapshot(BaseModel):
    """
    Read-only view of the catalog for one analysis run.

    Shared by reference between the pre-scanner, the orchestrator and the
    aggregator; nothing in the pipeline mutates it.
    """
    model_config = ConfigDict(frozen=True)

    clients: List[CatalogClient] = Field(default_factory=list)
    products: List[CatalogProduct] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.clients and not self.products

    def get_client(self, client_id: Optional[str]) -> Optional[CatalogClient]:
        if client_id is None:
            return None
        for client in self.clients:
            if client.id == client_id:
                return client
        return None

    def get_product(self, product_id: Optional[str]) -> Optional[CatalogProduct]:
        if product_id is None:
            return None
        for product in self.products:
            if product.id == product_id:
                return product
        return None


# ============================================
# PRE-SCANNER OUTPUT
# ============================================

class UnknownToken(BaseModel):
    """A word that matched no known client or product name"""
    model_config = ConfigDict(frozen=True)

    word: str
    kind: TokenKind


class TextSegment(BaseModel):
    """Display segment; concatenating all segments rebuilds the message"""
    model_config = ConfigDict(frozen=True)

    text: str
    is_highlighted: bool = False
    kind: Optional[TokenKind] = None


# ============================================
# EXTRACTION RESULTS
# ============================================

class ExtractedProduct(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: OptionalId = None
    name: str


class ExtractedVariant(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: OptionalId = None
    name: str = ""


class Alternative(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: OptionalId = None
    name: str


class ExtractedLineItem(BaseModel):
    """
    One product line inside a client group.

    Frozen: edits produce a new instance through `model_copy(update=...)`.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    product: ExtractedProduct
    quantity: float = Field(gt=0)
    variant: Optional[ExtractedVariant] = None
    status: ItemStatus = ItemStatus.CONFIRMED
    alternatives: List[Alternative] = Field(default_factory=list)
    notes: Optional[str] = None

    @field_validator("quantity", mode="before")
    @classmethod
    def _reject_bool_quantity(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("quantity must be a number")
        return value

    @field_validator("variant", mode="before")
    @classmethod
    def _drop_empty_variant(cls, value: Any) -> Any:
        # {"id": null, "name": ""} means no variant was mentioned
        if isinstance(value, dict):
            name = value.get("name")
            if _normalize_id(value.get("id")) is None and (name is None or not str(name).strip()):
                return None
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _status_alias(cls, value: Any) -> Any:
        if value is None:
            return ItemStatus.CONFIRMED
        if isinstance(value, str):
            key = value.strip().lower()
            return STATUS_ALIASES.get(key, key)
        return value

    @field_validator("alternatives", mode="before")
    @classmethod
    def _null_alternatives(cls, value: Any) -> Any:
        return [] if value is None else value


class ExtractedClientMatch(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, coerce_numbers_to_str=True)

    id: OptionalId = None
    name: str
    match_confidence: MatchConfidence = Field(
        default=MatchConfidence.UNKNOWN, alias="matchConfidence"
    )

    @field_validator("match_confidence", mode="before")
    @classmethod
    def _confidence_alias(cls, value: Any) -> Any:
        if value is None:
            return MatchConfidence.UNKNOWN
        if isinstance(value, str):
            key = value.strip().lower()
            return CONFIDENCE_ALIASES.get(key, key)
        return value


class MessageAnalysis(BaseModel):
    """One client group as returned by the completion service"""
    model_config = ConfigDict(populate_by_name=True)

    client: ExtractedClientMatch
    items: List[ExtractedLineItem] = Field(default_factory=list)
    unmatched_text: Optional[str] = Field(default=None, alias="unmatchedText")

    @model_validator(mode="before")
    @classmethod
    def _null_items(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("items") is None:
            data = {**data, "items": []}
        return data


# ============================================
# DRAFT ORDER CARDS
# ============================================

class DraftOrderCard(BaseModel):
    """
    In-memory order draft for one client.

    Owned by the OrderAggregator; `complete` and `total` are recomputed by the
    aggregator after every ingest/update/delete.
    """
    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    id: OptionalId = None
    group_key: str
    client: ExtractedClientMatch
    items: List[ExtractedLineItem] = Field(default_factory=list)
    is_paid: bool = Field(default=False, alias="isPaid")
    state: CardState = CardState.PENDING
    complete: bool = False
    total: float = 0.0
    unmatched_text: Optional[str] = Field(default=None, alias="unmatchedText")


# ============================================
# API REQUEST / RESPONSE MODELS
# ============================================

class ScanRequest(BaseModel):
    message: str = Field(..., description="Raw customer message")


class ScanResponse(BaseModel):
    unknown_tokens: List[UnknownToken]
    segments: List[TextSegment]


class AnalyzeRequest(BaseModel):
    message: str = Field(..., min_length=1, description="Raw customer message")


class AnalyzeResponse(BaseModel):
    run_id: str
    status: str


class RunStateResponse(BaseModel):
    """Progress snapshot for a run"""
    run_id: str
    status: str
    stage: str
    progress: float
    elapsed_seconds: float
    cancelled: bool
    is_current: bool
    error: Optional[Dict[str, Any]] = None
    phase1_response: Optional[str] = None
    phase2_response: Optional[str] = None
    phase3_response: Optional[str] = None


class ItemPatch(BaseModel):
    """Edit to a single line item of a card"""
    index: int = Field(..., ge=0)
    quantity: Optional[float] = Field(default=None, gt=0)
    product: Optional[ExtractedProduct] = None
    variant: Optional[ExtractedVariant] = None
    clear_variant: bool = False
    status: Optional[ItemStatus] = None


class DraftPatch(BaseModel):
    """User edit to a draft card"""
    model_config = ConfigDict(populate_by_name=True)

    client: Optional[ExtractedClientMatch] = None
    is_paid: Optional[bool] = Field(default=None, alias="isPaid")
    items: List[ItemPatch] = Field(default_factory=list)
    remove_items: List[int] = Field(default_factory=list)


class DraftsResponse(BaseModel):
    cards: List[DraftOrderCard]
    can_save_all: bool


class SaveResponse(BaseModel):
    status: str
    saved_order_ids: List[str] = Field(default_factory=list)
    message: str
