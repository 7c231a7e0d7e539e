import logging
import os
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field, field_validator

import browse
from config import Settings, settings
from database import StorageBackend, init_db
from errors import (
    AuthError,
    NotFoundError,
    PermissionDeniedError,
    SponsorConnectError,
    ValidationError,
)
from funding import FundingService
from identity import IdentityService, Session
from lifecycle import SponsorshipLifecycle
from messaging import MessagingService
from payments import PaymentProcessor, init_processor
from schemas import ROLES, SchemaError, User, load_record, load_records

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    store: StorageBackend
    processor: PaymentProcessor
    identity: IdentityService
    sponsorships: SponsorshipLifecycle
    funding: FundingService
    messaging: MessagingService


def build_context(
    config: Settings,
    store: Optional[StorageBackend] = None,
    processor: Optional[PaymentProcessor] = None,
) -> AppContext:
    store = store or init_db(config)
    processor = processor or init_processor(config)
    lifecycle = SponsorshipLifecycle(store)
    return AppContext(
        settings=config,
        store=store,
        processor=processor,
        identity=IdentityService(store, config),
        sponsorships=lifecycle,
        funding=FundingService(store, lifecycle, processor, config.PLATFORM_FEE_RATE),
        messaging=MessagingService(store),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.ctx is None:
        app.state.ctx = build_context(settings)
    ctx = app.state.ctx
    logger.info("SponsorConnect started (storage=%s, payments=%s)", ctx.store.name, ctx.processor.name)
    yield


app = FastAPI(title="SponsorConnect API", lifespan=lifespan)
app.state.ctx = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SponsorConnectError)
async def sponsorconnect_error_handler(request: Request, exc: SponsorConnectError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": SponsorConnectError.default_message})


# Dependencies

def get_ctx(request: Request) -> AppContext:
    ctx = request.app.state.ctx
    if ctx is None:
        raise SponsorConnectError("Service not initialised")
    return ctx


bearer = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    session: Session
    user: User


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    ctx: AppContext = Depends(get_ctx),
) -> CurrentUser:
    if credentials is None:
        raise AuthError()
    session = ctx.identity.current_session(credentials.credentials)
    user = load_record(User, ctx.store.get_document("user", session.user_id))
    if user is None:
        raise AuthError("Account no longer exists")
    if not user.is_active:
        raise AuthError("This account has been deactivated")
    return CurrentUser(session=session, user=user)


def optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    ctx: AppContext = Depends(get_ctx),
) -> Optional[CurrentUser]:
    if credentials is None:
        return None
    return current_user(credentials, ctx)


def require_admin(cu: CurrentUser = Depends(current_user)) -> CurrentUser:
    if cu.user.role != "admin":
        raise PermissionDeniedError("Admin access required")
    return cu


def dump(items):
    return [i.model_dump() for i in items]


@app.get("/")
def root(ctx: AppContext = Depends(get_ctx)):
    return {
        "service": "SponsorConnect API",
        "status": "ok",
        "currency": "GBP",
        "storage": ctx.store.name,
        "payments": ctx.processor.name,
        "demo_mode": ctx.store.name == "local",
    }


@app.get("/test")
def test_database(ctx: AppContext = Depends(get_ctx)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "storage": ctx.store.name,
        "database_url": "✅ Set" if ctx.settings.DATABASE_URL else "❌ Not Set",
        "database_name": ctx.settings.DATABASE_NAME,
        "collections": [],
    }
    if ctx.store.ping():
        response["database"] = "✅ Available"
        try:
            response["collections"] = ctx.store.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except SponsorConnectError as e:
            response["database"] = f"⚠️ Connected but error: {e.message[:60]}"
    return response


# Auth

class RegisterPayload(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: str  # club or business (admin needs admin_key)
    admin_key: Optional[str] = None


class LoginPayload(BaseModel):
    email: str
    password: str


def _session_response(session: Session, user: User):
    return {"token": session.token, "expires_at": session.expires_at, "user": user.model_dump()}


@app.post("/auth/register", status_code=201)
def register(payload: RegisterPayload, ctx: AppContext = Depends(get_ctx)):
    user = ctx.identity.register(payload.email, payload.password, payload.name, payload.role, payload.admin_key)
    session = ctx.identity.sign_in(payload.email, payload.password)
    return _session_response(session, user)


@app.post("/auth/login")
def login(payload: LoginPayload, ctx: AppContext = Depends(get_ctx)):
    session = ctx.identity.sign_in(payload.email, payload.password)
    user = load_record(User, ctx.store.get_document("user", session.user_id))
    return _session_response(session, user)


@app.post("/auth/logout")
def logout(cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    ctx.identity.sign_out(cu.session.token)
    return {"signed_out": True}


@app.get("/auth/me")
def me(cu: CurrentUser = Depends(current_user)):
    return cu.user.model_dump()


# Users / profiles

UK_PHONE_RE = re.compile(r"^(\+44|0)[1-9]\d{8,9}$")
UK_POSTCODE_RE = re.compile(r"^[A-Z]{1,2}\d[A-Z\d]?\s*\d[A-Z]{2}$", re.IGNORECASE)


class ProfilePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    location: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    phone: Optional[str] = None
    postcode: Optional[str] = None
    website: Optional[str] = Field(None, max_length=200)
    sport: Optional[str] = Field(None, max_length=100)
    budget_range: Optional[str] = Field(None, max_length=100)

    @field_validator("phone")
    @classmethod
    def uk_phone(cls, v):
        if v and not UK_PHONE_RE.match(v.replace(" ", "")):
            raise ValueError("Please enter a valid UK phone number")
        return v.replace(" ", "") if v else v

    @field_validator("postcode")
    @classmethod
    def uk_postcode(cls, v):
        if v and not UK_POSTCODE_RE.match(v.strip()):
            raise ValueError("Please enter a valid UK postcode")
        return v.strip().upper() if v else v


@app.get("/users")
def list_users(
    role: Optional[str] = None,
    cu: CurrentUser = Depends(current_user),
    ctx: AppContext = Depends(get_ctx),
):
    """Users that can be messaged, e.g. businesses for a club."""
    if role and role not in ROLES:
        raise ValidationError("role must be club, business or admin")
    filters = {"is_active": True}
    if role:
        filters["role"] = role
    users = load_records(User, ctx.store.get_documents("user", filters, order_by="name"))
    return [{"id": u.id, "name": u.name, "role": u.role, "location": u.location} for u in users if u.id != cu.user.id]


@app.get("/users/{user_id}")
def get_user(user_id: str, cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    user = load_record(User, ctx.store.get_document("user", user_id))
    if user is None:
        raise NotFoundError("User not found")
    if cu.user.role != "admin" and cu.user.id != user_id:
        return user.model_dump(exclude={"email", "phone"})
    return user.model_dump()


@app.put("/users/me")
def update_profile(payload: ProfilePayload, cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    fields = payload.model_dump(exclude_none=True)
    if "name" in fields:
        fields["name"] = fields["name"].strip()
        if not fields["name"]:
            raise ValidationError("Name is required")
    if "email" in fields:
        fields["email"] = fields["email"].lower()
    fields["profile_completed"] = True
    # The merged record must still load as a User
    try:
        User.model_validate({**cu.user.model_dump(), **fields})
    except SchemaError as e:
        raise ValidationError(e.errors()[0]["msg"])
    if "email" in fields:
        ctx.identity.change_email(cu.user.id, fields["email"])
    ctx.store.update_document("user", cu.user.id, fields)
    return load_record(User, ctx.store.get_document("user", cu.user.id)).model_dump()


# Sponsorships

class SponsorshipPayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    amount: Optional[float] = None
    urgency: Optional[str] = "medium"
    deadline: Optional[date] = None
    benefits: Optional[str] = None
    location: Optional[str] = None


class StatusPayload(BaseModel):
    status: str


@app.post("/sponsorships", status_code=201)
def create_sponsorship(payload: SponsorshipPayload, cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    sponsorship = ctx.sponsorships.create(
        cu.user,
        payload.title,
        payload.description,
        payload.category,
        payload.amount,
        urgency=payload.urgency,
        deadline=payload.deadline,
        benefits=payload.benefits,
        location=payload.location,
    )
    return sponsorship.model_dump()


@app.get("/sponsorships")
def browse_sponsorships(
    category: Optional[str] = None,
    max_amount: Optional[float] = None,
    location: Optional[str] = None,
    urgency: Optional[str] = None,
    search: Optional[str] = None,
    sort: str = "newest",
    ctx: AppContext = Depends(get_ctx),
):
    if sort not in browse.SORTS:
        raise ValidationError(f"sort must be one of: {', '.join(browse.SORTS)}")
    items = browse.filter_sponsorships(
        ctx.sponsorships.list_active(),
        category=category,
        max_amount=max_amount,
        location=location,
        urgency=urgency,
        search=search,
        sort=sort,
    )
    return dump(items)


@app.get("/sponsorships/mine")
def my_sponsorships(cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    return dump(ctx.sponsorships.list_for_club(cu.user.id))


@app.get("/sponsorships/{sponsorship_id}")
def view_sponsorship(
    sponsorship_id: str,
    cu: Optional[CurrentUser] = Depends(optional_user),
    ctx: AppContext = Depends(get_ctx),
):
    viewer_id = cu.user.id if cu else None
    return ctx.sponsorships.record_view(sponsorship_id, viewer_id).model_dump()


@app.post("/sponsorships/{sponsorship_id}/interest")
def toggle_interest(sponsorship_id: str, cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    if cu.user.role != "business":
        raise PermissionDeniedError("Only businesses can show interest")
    interested = ctx.sponsorships.toggle_interest(sponsorship_id, cu.user.id)
    return {"interested": cu.user.id in interested, "interested_businesses": interested}


@app.patch("/sponsorships/{sponsorship_id}/status")
def set_sponsorship_status(
    sponsorship_id: str,
    payload: StatusPayload,
    cu: CurrentUser = Depends(current_user),
    ctx: AppContext = Depends(get_ctx),
):
    return ctx.sponsorships.set_status(sponsorship_id, payload.status, cu.user).model_dump()


@app.delete("/sponsorships/{sponsorship_id}")
def delete_sponsorship(sponsorship_id: str, cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    ctx.sponsorships.delete(sponsorship_id, cu.user)
    return {"deleted": True, "id": sponsorship_id}


# Payments

class PaymentIntentPayload(BaseModel):
    sponsorshipId: Optional[str] = None
    businessId: Optional[str] = None


@app.post("/create-payment-intent")
def create_payment_intent(payload: PaymentIntentPayload, ctx: AppContext = Depends(get_ctx)):
    if not payload.sponsorshipId or not payload.businessId:
        return JSONResponse(status_code=400, content={"error": "Missing required fields"})
    try:
        quote = ctx.funding.start_funding(payload.sponsorshipId, payload.businessId)
    except NotFoundError as e:
        return JSONResponse(status_code=404, content={"error": e.message})
    except SponsorConnectError as e:
        status = 400 if e.status_code < 500 else 500
        return JSONResponse(status_code=status, content={"error": e.message})
    return {
        "clientSecret": quote.client_secret,
        "paymentIntentId": quote.payment_intent_id,
        "amount": float(quote.amount),
        "platformFee": float(quote.platform_fee),
        "clubAmount": float(quote.club_amount),
    }


class ConfirmPaymentPayload(BaseModel):
    sponsorship_id: str
    payment_intent_id: str
    payment_method: Optional[str] = None


@app.post("/payments/confirm")
def confirm_payment(payload: ConfirmPaymentPayload, cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    """Record a confirmed card payment.

    Browsers confirm with the processor directly and only send the intent id;
    a payment_method lets the server confirm it instead (test cards, demo mode).
    """
    if cu.user.role != "business":
        raise PermissionDeniedError("Only businesses can fund sponsorships")
    if payload.payment_method:
        ctx.funding.confirm_card_payment(payload.payment_intent_id, payload.payment_method)
    agreement = ctx.funding.complete_funding(payload.sponsorship_id, cu.user.id, payload.payment_intent_id)
    return agreement.model_dump()


@app.get("/agreements")
def my_agreements(cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    return dump(ctx.funding.list_for_user(cu.user))


@app.get("/agreements/by-payment/{payment_intent_id}")
def agreement_for_payment(payment_intent_id: str, cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    agreement = ctx.funding.get_agreement_for_payment(payment_intent_id, cu.user.id)
    if agreement is None:
        raise NotFoundError("Agreement not found")
    return agreement.model_dump()


# Conversations and messages

class StartConversationPayload(BaseModel):
    recipient_id: str
    text: str
    subject: Optional[str] = None
    sponsorship_id: Optional[str] = None


class SendMessagePayload(BaseModel):
    text: str


@app.post("/conversations", status_code=201)
def start_conversation(payload: StartConversationPayload, cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    conversation = ctx.messaging.start_conversation(
        cu.user, payload.recipient_id, payload.text, subject=payload.subject, sponsorship_id=payload.sponsorship_id
    )
    return conversation.model_dump()


@app.get("/conversations")
def list_conversations(cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    return dump(ctx.messaging.list_conversations(cu.user.id))


@app.get("/conversations/{conversation_id}/messages")
def list_messages(conversation_id: str, cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    return dump(ctx.messaging.list_messages(conversation_id, cu.user.id))


@app.post("/conversations/{conversation_id}/messages", status_code=201)
def send_message(conversation_id: str, payload: SendMessagePayload, cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    return ctx.messaging.send_message(conversation_id, cu.user, payload.text).model_dump()


@app.post("/conversations/{conversation_id}/read")
def mark_read(conversation_id: str, cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    return {"marked_read": ctx.messaging.mark_read(conversation_id, cu.user.id)}


@app.get("/messages/unread-count")
def unread_count(cu: CurrentUser = Depends(current_user), ctx: AppContext = Depends(get_ctx)):
    return {"unread": ctx.messaging.unread_count(cu.user.id)}


# Admin

class ActivePayload(BaseModel):
    is_active: bool


@app.get("/admin/overview")
def admin_overview(admin: CurrentUser = Depends(require_admin), ctx: AppContext = Depends(get_ctx)):
    return {
        "users": browse.user_stats(load_records(User, ctx.store.get_documents("user"))),
        "sponsorships": browse.sponsorship_stats(ctx.sponsorships.list_all()),
        "payments": browse.agreement_stats(ctx.funding.list_all()),
    }


@app.get("/admin/users")
def admin_users(
    role: Optional[str] = None,
    active: Optional[bool] = None,
    search: Optional[str] = None,
    admin: CurrentUser = Depends(require_admin),
    ctx: AppContext = Depends(get_ctx),
):
    users = load_records(User, ctx.store.get_documents("user", order_by="created_at", descending=True))
    filtered = browse.filter_users(users, role=role, active=active, search=search)
    return {"users": dump(filtered), "stats": browse.user_stats(users)}


@app.patch("/admin/users/{user_id}/active")
def admin_set_user_active(user_id: str, payload: ActivePayload, admin: CurrentUser = Depends(require_admin), ctx: AppContext = Depends(get_ctx)):
    if user_id == admin.user.id and not payload.is_active:
        raise ValidationError("You cannot deactivate your own account")
    if not ctx.store.update_document("user", user_id, {"is_active": payload.is_active}):
        raise NotFoundError("User not found")
    logger.info("User %s is_active=%s set by admin %s", user_id, payload.is_active, admin.user.id)
    return load_record(User, ctx.store.get_document("user", user_id)).model_dump()


@app.post("/admin/users/{user_id}/promote")
def admin_promote(user_id: str, admin: CurrentUser = Depends(require_admin), ctx: AppContext = Depends(get_ctx)):
    if not ctx.store.update_document("user", user_id, {"role": "admin"}):
        raise NotFoundError("User not found")
    logger.info("User %s promoted to admin by %s", user_id, admin.user.id)
    return load_record(User, ctx.store.get_document("user", user_id)).model_dump()


@app.get("/admin/sponsorships")
def admin_sponsorships(
    status: Optional[str] = None,
    category: Optional[str] = None,
    urgency: Optional[str] = None,
    search: Optional[str] = None,
    admin: CurrentUser = Depends(require_admin),
    ctx: AppContext = Depends(get_ctx),
):
    items = ctx.sponsorships.list_all()
    filtered = browse.filter_sponsorships(items, category=category, urgency=urgency, status=status, search=search)
    return {"sponsorships": dump(filtered), "stats": browse.sponsorship_stats(items)}


@app.get("/admin/agreements")
def admin_agreements(
    status: Optional[str] = None,
    search: Optional[str] = None,
    admin: CurrentUser = Depends(require_admin),
    ctx: AppContext = Depends(get_ctx),
):
    items = ctx.funding.list_all()
    return {"agreements": dump(browse.filter_agreements(items, status=status, search=search)), "stats": browse.agreement_stats(items)}


@app.patch("/admin/agreements/{agreement_id}/status")
def admin_set_agreement_status(agreement_id: str, payload: StatusPayload, admin: CurrentUser = Depends(require_admin), ctx: AppContext = Depends(get_ctx)):
    return ctx.funding.set_agreement_status(agreement_id, payload.status).model_dump()


# Seeding sample sponsorships for demo
DEMO_SPONSORSHIPS = [
    ("Manchester Youth FC", "Manchester", "New Football Kit Sponsorship",
     "Our local football club needs sponsorship for new team kits for the upcoming season. We have 25 players who need quality jerseys and shorts.",
     "equipment", 2500, "high"),
    ("Birmingham Tennis Club", "Birmingham", "Tennis Court Maintenance Fund",
     "Our tennis club courts need resurfacing and net replacement. This will benefit our 50+ members and local community.",
     "facility", 5000, "medium"),
    ("London Youth Cricket", "London", "Youth Cricket Team Travel Support",
     "Our under-16 cricket team has qualified for regional championships and needs travel support for accommodation and transport.",
     "travel", 1200, "high"),
    ("Liverpool Swimming Club", "Liverpool", "Swimming Pool Equipment Upgrade",
     "Our swimming club needs new lane ropes and timing equipment to host regional competitions.",
     "equipment", 3000, "low"),
]


@app.post("/seed")
def seed_sponsorships(ctx: AppContext = Depends(get_ctx)):
    if ctx.store.get_documents("sponsorship", limit=1):
        return {"message": "Seed data already exists"}
    for club_name, location, title, description, category, amount, urgency in DEMO_SPONSORSHIPS:
        club = User(name=club_name, email=f"{club_name.lower().replace(' ', '.')}@demo.sponsorconnect", role="club", location=location, profile_completed=True)
        club.id = ctx.store.create_document("user", club)
        ctx.sponsorships.create(club, title, description, category, amount, urgency=urgency, location=location)
    return {"message": "Sponsorships seeded"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
