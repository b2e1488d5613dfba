from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class EntryType(str, Enum):
    GAME = "game"
    PRACTICE = "practice"
    TOURNAMENT = "tournament"
    MOMENT = "moment"


class GameResult(str, Enum):
    WIN = "win"
    LOSS = "loss"
    DRAW = "draw"


class OrderStatus(str, Enum):
    ORDERED = "ordered"
    PRINTING = "printing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    ERROR = "error"


class FulfillmentStage(str, Enum):
    RECEIVED = "received"
    FETCHING = "fetching"
    RENDERING = "rendering"
    UPLOADING = "uploading"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    ARTIFACTS_READY = "artifacts_ready"
    FAILED = "failed"


class DocumentType(str, Enum):
    INTERIOR = "interior"
    COVER = "cover"


class Entry(BaseModel):
    """One journaled event. Accepts the journal's wire names as aliases."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    type: EntryType = Field(validation_alias=AliasChoices("type", "entry_type"))
    date: dt.date = Field(validation_alias=AliasChoices("date", "entry_date"))
    text: str = Field(default="", max_length=500)
    opponent: Optional[str] = None
    venue: Optional[str] = None
    score_home: Optional[int] = Field(default=None, ge=0)
    score_away: Optional[int] = Field(default=None, ge=0)
    result: Optional[GameResult] = None
    photo: Optional[str] = Field(default=None, validation_alias=AliasChoices("photo", "photoData", "photoPreview"))

    @field_validator("text", mode="before")
    @classmethod
    def _none_text_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def has_photo(self) -> bool:
        return bool(self.photo)

    @property
    def has_score(self) -> bool:
        return (
            self.type in (EntryType.GAME, EntryType.TOURNAMENT)
            and self.score_home is not None
            and self.score_away is not None
        )

    def to_template(self) -> Dict[str, Any]:
        """Serialize using the field names the book template reads."""
        return {
            "id": self.id,
            "entry_type": self.type.value,
            "entry_date": self.date.isoformat(),
            "text": self.text,
            "opponent": self.opponent,
            "venue": self.venue,
            "score_home": self.score_home,
            "score_away": self.score_away,
            "result": self.result.value if self.result else None,
            "photoData": self.photo,
        }


class Team(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = "Team"
    color: Optional[str] = None


class BookData(BaseModel):
    """The JSON document stored before checkout and fetched by fulfillment."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    team: Team = Field(default_factory=Team)
    season: Optional[Any] = None
    players: List[Any] = Field(default_factory=list)
    entries: List[Entry] = Field(default_factory=list)
    page_count: Optional[int] = Field(default=None, ge=3, validation_alias=AliasChoices("page_count", "pageCount"))


class ShippingAddress(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1)
    email: str = Field(pattern=r"^\S+@\S+\.\S+$")
    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(pattern=r"^[A-Za-z]{2}$")
    zip: str = Field(pattern=r"^\d{5}(-\d{4})?$")
    phone: str = ""
    country: str = "US"

    @classmethod
    def from_checkout_metadata(cls, metadata: Dict[str, Any]) -> "ShippingAddress":
        return cls(
            name=metadata.get("shipping_name") or "",
            email=metadata.get("shipping_email") or "",
            street=metadata.get("shipping_street") or "",
            city=metadata.get("shipping_city") or "",
            state=metadata.get("shipping_state") or "",
            zip=metadata.get("shipping_zip") or "",
            phone=metadata.get("shipping_phone") or "",
        )

    def to_checkout_metadata(self) -> Dict[str, str]:
        return {
            "shipping_name": self.name,
            "shipping_email": self.email,
            "shipping_street": self.street,
            "shipping_city": self.city,
            "shipping_state": self.state,
            "shipping_zip": self.zip,
            "shipping_phone": self.phone,
        }


class CheckoutCompleted(BaseModel):
    """The parts of a verified checkout.session.completed event we act on."""

    session_id: str
    created: int
    metadata: Dict[str, Any] = Field(default_factory=dict)
    customer_email: Optional[str] = None

    @property
    def book_data_url(self) -> Optional[str]:
        return self.metadata.get("bookDataUrl") or None


class JobEvent(BaseModel):
    timestamp: dt.datetime
    message: str


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FulfillmentSummary(ApiModel):
    id: str
    payment_session_id: str
    external_id: str
    stage: FulfillmentStage
    order_status: Optional[OrderStatus] = None
    vendor_order_id: Optional[str] = None
    created_at: dt.datetime
    updated_at: dt.datetime


class FulfillmentDetail(FulfillmentSummary):
    book_data_url: Optional[str] = None
    page_count: Optional[int] = None
    interior_url: Optional[str] = None
    cover_url: Optional[str] = None
    vendor_status: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    events: List[JobEvent] = Field(default_factory=list)


class StoreBookDataRequest(ApiModel):
    book_data: BookData


class StoreBookDataResponse(ApiModel):
    url: str
    page_count: int


class BookPreview(ApiModel):
    total_pages: int
    billable_pages: int
    content_pages: List[List[str]]
    cover_width: str
    cover_height: str


class CheckoutRequest(ApiModel):
    book_data_url: str = Field(min_length=1)
    shipping: ShippingAddress


class CheckoutResponse(ApiModel):
    url: str
    session_id: str


class OrderStatusResponse(ApiModel):
    order_id: str
    external_id: Optional[str] = None
    status: OrderStatus
    vendor_status: str
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    estimated_ship_date: Optional[str] = None


class ShippingEstimateRequest(ApiModel):
    page_count: int = Field(ge=1)
    quantity: int = Field(default=1, ge=1)
    state: str = Field(pattern=r"^[A-Za-z]{2}$")
    zip: str = Field(pattern=r"^\d{5}(-\d{4})?$")
    country: str = "US"


class IntegrationStatus(ApiModel):
    payments: bool
    storage: bool
    vendor: bool
    vendor_name: str
    product: str
    email: bool


class DiagnosticStep(ApiModel):
    step: str
    status: str
    detail: str = ""


class PipelineDiagnostic(ApiModel):
    steps: List[DiagnosticStep] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(step.status != "fail" for step in self.steps)
