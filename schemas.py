"""
Database Schemas for SponsorConnect (grassroots sports sponsorship marketplace)

Each Pydantic model represents a collection in your database.
Model name is converted to lowercase for the collection name:
- User -> "user"
- Sponsorship -> "sponsorship"
- Agreement -> "agreement"
- Conversation -> "conversation"
- Message -> "message"
- Account -> "account" (credentials, never returned by the API)

Currency: All monetary values are stored in pounds sterling (GBP).
"""

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from errors import StoreError

Role = Literal["club", "business", "admin"]
Category = Literal["equipment", "event", "facility", "travel", "training", "general"]
Urgency = Literal["low", "medium", "high"]
SponsorshipStatus = Literal["active", "funded", "paused", "expired"]
AgreementStatus = Literal["active", "completed", "disputed", "refunded"]

ROLES = ("club", "business", "admin")
CATEGORIES = ("equipment", "event", "facility", "travel", "training", "general")
URGENCIES = ("low", "medium", "high")
SPONSORSHIP_STATUSES = ("active", "funded", "paused", "expired")
AGREEMENT_STATUSES = ("active", "completed", "disputed", "refunded")


class User(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    email: str
    role: Role
    profile_completed: bool = False
    is_active: bool = True
    location: Optional[str] = None
    description: Optional[str] = None
    phone: Optional[str] = None
    postcode: Optional[str] = None
    website: Optional[str] = None
    sport: Optional[str] = Field(None, description="For clubs: the sport played")
    budget_range: Optional[str] = Field(None, description="For businesses: typical sponsorship budget")
    created_at: Optional[datetime] = None


class Sponsorship(BaseModel):
    id: Optional[str] = None
    club_id: str
    club_name: str
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    category: Category
    amount: float = Field(..., gt=0, le=1_000_000, description="Requested amount in GBP")
    urgency: Urgency = "medium"
    status: SponsorshipStatus = "active"
    deadline: Optional[date] = None
    benefits: Optional[str] = None
    location: Optional[str] = None
    view_count: int = Field(0, ge=0)
    interested_businesses: List[str] = Field(default_factory=list)
    funded_by: Optional[str] = None
    funded_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Agreement(BaseModel):
    id: Optional[str] = None
    sponsorship_id: str
    sponsorship_title: str
    club_id: str
    club_name: str
    business_id: str
    business_name: str
    amount: float = Field(..., gt=0)
    platform_fee: float = Field(..., ge=0)
    club_amount: float = Field(..., ge=0)
    payment_intent_id: str
    status: AgreementStatus = "active"
    created_at: Optional[datetime] = None


class Conversation(BaseModel):
    id: Optional[str] = None
    participants: List[str] = Field(..., min_length=2, max_length=2)
    participant_names: Dict[str, str] = Field(default_factory=dict)
    participant_roles: Dict[str, str] = Field(default_factory=dict)
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    subject: Optional[str] = Field(None, description="Sponsorship title the conversation is about")
    sponsorship_id: Optional[str] = None
    created_at: Optional[datetime] = None


class Message(BaseModel):
    id: Optional[str] = None
    conversation_id: str
    sender_id: str
    sender_name: str
    text: str = Field(..., min_length=1, max_length=1000)
    sent_at: Optional[datetime] = None
    read: bool = False


class Account(BaseModel):
    email: str
    password_hash: str
    user_id: str


ModelT = TypeVar("ModelT", bound=BaseModel)


def load_record(model: Type[ModelT], doc: Optional[Dict[str, Any]]) -> Optional[ModelT]:
    """Validate a stored document against its schema.

    Malformed records are rejected instead of being patched with defaults.
    """
    if doc is None:
        return None
    try:
        return model.model_validate(doc)
    except SchemaError as e:
        raise StoreError(f"Malformed {model.__name__.lower()} record {doc.get('id')}: {e.errors()[0]['msg']}")


def load_records(model: Type[ModelT], docs: List[Dict[str, Any]]) -> List[ModelT]:
    return [load_record(model, d) for d in docs]
