"""
Sponsorship lifecycle

    active -> funded            (fund, after a confirmed payment)
    active <-> paused           (owner or admin)
    active -> expired           (owner or admin)
    any -> deleted              (owner or admin, record removed)

Admins may force any status from any other. Owning clubs are held to the
transitions above.
"""
import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from database import StorageBackend, utcnow
from errors import (
    AlreadyFundedError,
    InvalidTransitionError,
    NotActiveError,
    NotAvailableError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from payments import to_decimal
from schemas import (
    CATEGORIES,
    SPONSORSHIP_STATUSES,
    URGENCIES,
    SchemaError,
    Sponsorship,
    User,
    load_record,
    load_records,
)

logger = logging.getLogger(__name__)

COLLECTION = "sponsorship"
MAX_AMOUNT = Decimal("1000000")
MAX_TITLE_LENGTH = 200
MIN_DESCRIPTION_LENGTH = 10
MAX_DESCRIPTION_LENGTH = 2000
MAX_LOCATION_LENGTH = 100

OWNER_TRANSITIONS = {
    "active": {"paused", "expired"},
    "paused": {"active"},
    "funded": set(),
    "expired": set(),
}


class SponsorshipLifecycle:
    def __init__(self, store: StorageBackend):
        self.store = store

    def get(self, request_id: str) -> Sponsorship:
        sponsorship = load_record(Sponsorship, self.store.get_document(COLLECTION, request_id))
        if sponsorship is None:
            raise NotFoundError("Sponsorship request not found")
        return sponsorship

    def list_active(self, limit: Optional[int] = None) -> List[Sponsorship]:
        docs = self.store.get_documents(COLLECTION, {"status": "active"}, order_by="created_at", descending=True, limit=limit)
        return load_records(Sponsorship, docs)

    def list_for_club(self, club_id: str) -> List[Sponsorship]:
        docs = self.store.get_documents(COLLECTION, {"club_id": club_id}, order_by="created_at", descending=True)
        return load_records(Sponsorship, docs)

    def list_all(self) -> List[Sponsorship]:
        return load_records(Sponsorship, self.store.get_documents(COLLECTION, order_by="created_at", descending=True))

    def create(
        self,
        club: User,
        title: Optional[str],
        description: Optional[str],
        category: Optional[str],
        amount,
        urgency: Optional[str] = "medium",
        deadline: Optional[date] = None,
        benefits: Optional[str] = None,
        location: Optional[str] = None,
    ) -> Sponsorship:
        if club.role not in ("club", "admin"):
            raise PermissionDeniedError("Only clubs can post sponsorship requests")

        title = (title or "").strip()
        description = (description or "").strip()
        if not title or not description or not category or amount in (None, ""):
            raise ValidationError("Please fill in all required fields")
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(f"Title must not exceed {MAX_TITLE_LENGTH} characters")
        if len(description) < MIN_DESCRIPTION_LENGTH:
            raise ValidationError(f"Description must be at least {MIN_DESCRIPTION_LENGTH} characters")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(f"Description must not exceed {MAX_DESCRIPTION_LENGTH} characters")
        location = (location or "").strip() or None
        if location and len(location) > MAX_LOCATION_LENGTH:
            raise ValidationError(f"Location must not exceed {MAX_LOCATION_LENGTH} characters")
        if category not in CATEGORIES:
            raise ValidationError(f"Category must be one of: {', '.join(CATEGORIES)}")
        urgency = urgency or "medium"
        if urgency not in URGENCIES:
            raise ValidationError(f"Urgency must be one of: {', '.join(URGENCIES)}")
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationError("Amount must be a number")
        if not value.is_finite() or value <= 0:
            raise ValidationError("Amount must be greater than 0")
        if value > MAX_AMOUNT:
            raise ValidationError("Amount must not exceed £1,000,000")
        if value != to_decimal(value):
            raise ValidationError("Amount must be a valid currency amount")

        try:
            sponsorship = Sponsorship(
                club_id=club.id,
                club_name=club.name,
                title=title,
                description=description,
                category=category,
                amount=float(value),
                urgency=urgency,
                status="active",
                deadline=deadline,
                benefits=(benefits or "").strip() or None,
                location=location,
            )
        except SchemaError as e:
            raise ValidationError(e.errors()[0]["msg"])
        sponsorship.id = self.store.create_document(COLLECTION, sponsorship)
        logger.info("Sponsorship %s created by club %s for %s", sponsorship.id, club.id, value)
        return self.get(sponsorship.id)

    def record_view(self, request_id: str, viewer_id: Optional[str]) -> Sponsorship:
        sponsorship = self.get(request_id)
        if viewer_id and viewer_id != sponsorship.club_id:
            self.store.increment_field(COLLECTION, request_id, "view_count", 1)
            sponsorship.view_count += 1
        return sponsorship

    def toggle_interest(self, request_id: str, business_id: str) -> List[str]:
        sponsorship = self.get(request_id)
        interested = list(sponsorship.interested_businesses)
        if business_id in interested:
            interested.remove(business_id)
        else:
            interested.append(business_id)
        self.store.update_document(COLLECTION, request_id, {"interested_businesses": interested})
        return interested

    def fund(self, request_id: str, business_id: str, payment_reference: str) -> Sponsorship:
        sponsorship = self.get(request_id)
        require_active(sponsorship)
        fields = {
            "status": "funded",
            "funded_by": business_id,
            "funded_at": utcnow(),
            "payment_reference": payment_reference,
        }
        # Conditional write: only succeeds if nobody funded or paused it since the read
        if not self.store.update_document_if(COLLECTION, request_id, {"status": "active"}, fields):
            require_active(self.get(request_id))
            raise NotAvailableError()
        logger.info("Sponsorship %s funded by business %s (payment %s)", request_id, business_id, payment_reference)
        return self.get(request_id)

    def set_status(self, request_id: str, new_status: str, actor: User) -> Sponsorship:
        if new_status not in SPONSORSHIP_STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(SPONSORSHIP_STATUSES)}")
        sponsorship = self.get(request_id)
        _require_owner_or_admin(sponsorship, actor)
        if actor.role != "admin" and new_status != sponsorship.status:
            if new_status not in OWNER_TRANSITIONS[sponsorship.status]:
                raise InvalidTransitionError(f"Cannot change a {sponsorship.status} request to {new_status}")
        self.store.update_document(COLLECTION, request_id, {"status": new_status})
        logger.info("Sponsorship %s status %s -> %s by %s", request_id, sponsorship.status, new_status, actor.id)
        return self.get(request_id)

    def delete(self, request_id: str, actor: User) -> None:
        sponsorship = self.get(request_id)
        _require_owner_or_admin(sponsorship, actor)
        self.store.delete_document(COLLECTION, request_id)
        logger.info("Sponsorship %s deleted by %s", request_id, actor.id)


def require_active(sponsorship: Sponsorship) -> None:
    if sponsorship.status == "funded":
        raise AlreadyFundedError()
    if sponsorship.status != "active":
        raise NotActiveError(f"This sponsorship is {sponsorship.status} and not available for funding")


def _require_owner_or_admin(sponsorship: Sponsorship, actor: User) -> None:
    if actor.role != "admin" and actor.id != sponsorship.club_id:
        raise PermissionDeniedError("Only the owning club or an admin can do that")
