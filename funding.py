"""
Funding workflow

1. start_funding: check the sponsorship is active and ask the payment
   processor for an intent carrying the platform fee.
2. The client confirms the card payment against the client secret.
3. complete_funding: verify the intent succeeded, write the Agreement, then
   move the sponsorship to funded.

The Agreement and the status change are two separate writes. When the status
change loses a race with another funder, the Agreement is kept (the money
has moved) but marked disputed so an admin can refund it.

A payment intent is only accepted from the business it was created for, for
the sponsorship and amount it was created for, and records at most one
Agreement.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from database import StorageBackend
from errors import (
    NotAvailableError,
    NotFoundError,
    PaymentDeclinedError,
    PaymentInitError,
    PermissionDeniedError,
    SponsorConnectError,
    ValidationError,
)
from lifecycle import SponsorshipLifecycle, require_active
from payments import PaymentProcessor, split, to_minor_units
from schemas import AGREEMENT_STATUSES, Agreement, User, load_record, load_records

logger = logging.getLogger(__name__)

COLLECTION = "agreement"


@dataclass
class FundingQuote:
    client_secret: str
    payment_intent_id: str
    amount: Decimal
    platform_fee: Decimal
    club_amount: Decimal


class FundingService:
    def __init__(
        self,
        store: StorageBackend,
        lifecycle: SponsorshipLifecycle,
        processor: PaymentProcessor,
        fee_rate: Decimal,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.processor = processor
        self.fee_rate = fee_rate

    def _business(self, business_id: str) -> User:
        business = load_record(User, self.store.get_document("user", business_id))
        if business is None:
            raise NotFoundError("Business not found")
        if business.role != "business":
            raise PermissionDeniedError("Only businesses can fund sponsorships")
        return business

    def start_funding(self, sponsorship_id: str, business_id: str) -> FundingQuote:
        sponsorship = self.lifecycle.get(sponsorship_id)
        if sponsorship.status != "active":
            raise NotAvailableError()
        business = self._business(business_id)

        parts = split(sponsorship.amount, self.fee_rate)
        metadata = {
            "sponsorship_id": sponsorship_id,
            "business_id": business_id,
            "club_id": sponsorship.club_id,
            "sponsorship_title": sponsorship.title,
            "business_name": business.name,
            "platform_fee": str(parts["platform_fee"]),
        }
        try:
            intent = self.processor.create_payment_intent(
                parts["amount"],
                parts["platform_fee"],
                metadata,
                receipt_email=business.email,
                description=f"Sponsorship: {sponsorship.title}",
            )
        except PaymentInitError:
            logger.exception("Payment intent for sponsorship %s failed", sponsorship_id)
            raise
        logger.info("Payment intent %s created for sponsorship %s by %s", intent.id, sponsorship_id, business_id)
        return FundingQuote(
            client_secret=intent.client_secret,
            payment_intent_id=intent.id,
            amount=parts["amount"],
            platform_fee=parts["platform_fee"],
            club_amount=parts["club_amount"],
        )

    def confirm_card_payment(self, payment_intent_id: str, payment_method: str) -> None:
        intent = self.processor.confirm_payment_intent(payment_intent_id, payment_method)
        if not intent.succeeded:
            raise PaymentDeclinedError(intent.error_message or f"Payment {intent.status}")

    def complete_funding(self, sponsorship_id: str, business_id: str, payment_intent_id: str) -> Agreement:
        existing = self.get_agreement_for_payment(payment_intent_id, business_id)
        if existing is not None:
            return existing

        intent = self.processor.retrieve_payment_intent(payment_intent_id)
        if not intent.succeeded:
            raise PaymentDeclinedError(intent.error_message or f"Payment {intent.status}")
        metadata = intent.metadata or {}
        if metadata.get("sponsorship_id") != sponsorship_id:
            raise PaymentDeclinedError("Payment does not belong to this sponsorship")
        if metadata.get("business_id") != business_id:
            raise PaymentDeclinedError("Payment was made by another business")

        sponsorship = self.lifecycle.get(sponsorship_id)
        if intent.amount != to_minor_units(sponsorship.amount):
            raise PaymentDeclinedError("Payment amount does not match the sponsorship")
        try:
            require_active(sponsorship)
        except NotAvailableError:
            # A concurrent confirmation of this same payment may have funded it
            existing = self.get_agreement_for_payment(payment_intent_id, business_id)
            if existing is not None:
                return existing
            raise
        business = self._business(business_id)

        parts = split(sponsorship.amount, self.fee_rate)
        agreement = Agreement(
            sponsorship_id=sponsorship_id,
            sponsorship_title=sponsorship.title,
            club_id=sponsorship.club_id,
            club_name=sponsorship.club_name,
            business_id=business_id,
            business_name=business.name,
            amount=float(parts["amount"]),
            platform_fee=float(parts["platform_fee"]),
            club_amount=float(parts["club_amount"]),
            payment_intent_id=payment_intent_id,
            status="active",
        )
        # One agreement per payment intent; losing the claim means another request recorded it
        agreement.id = self.store.insert_if_absent(COLLECTION, agreement, {"payment_intent_id": payment_intent_id})
        if agreement.id is None:
            existing = self.get_agreement_for_payment(payment_intent_id, business_id)
            if existing is None:
                raise PaymentDeclinedError("Payment has already been recorded")
            return existing

        try:
            self.lifecycle.fund(sponsorship_id, business_id, payment_intent_id)
        except SponsorConnectError:
            self.store.update_document(COLLECTION, agreement.id, {"status": "disputed"})
            logger.warning(
                "Sponsorship %s could not be marked funded after payment %s; agreement %s marked disputed",
                sponsorship_id, payment_intent_id, agreement.id,
            )
            raise
        logger.info("Agreement %s recorded for sponsorship %s", agreement.id, sponsorship_id)
        return self.get_agreement(agreement.id)

    def get_agreement(self, agreement_id: str) -> Agreement:
        agreement = load_record(Agreement, self.store.get_document(COLLECTION, agreement_id))
        if agreement is None:
            raise NotFoundError("Agreement not found")
        return agreement

    def get_agreement_for_payment(self, payment_intent_id: str, business_id: str) -> Optional[Agreement]:
        docs = self.store.get_documents(
            COLLECTION, {"payment_intent_id": payment_intent_id, "business_id": business_id}, limit=1
        )
        return load_record(Agreement, docs[0]) if docs else None

    def list_for_user(self, user: User) -> List[Agreement]:
        field = "club_id" if user.role == "club" else "business_id"
        docs = self.store.get_documents(COLLECTION, {field: user.id}, order_by="created_at", descending=True)
        return load_records(Agreement, docs)

    def list_all(self) -> List[Agreement]:
        return load_records(Agreement, self.store.get_documents(COLLECTION, order_by="created_at", descending=True))

    def set_agreement_status(self, agreement_id: str, new_status: str) -> Agreement:
        if new_status not in AGREEMENT_STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(AGREEMENT_STATUSES)}")
        self.get_agreement(agreement_id)
        self.store.update_document(COLLECTION, agreement_id, {"status": new_status})
        logger.info("Agreement %s status set to %s", agreement_id, new_status)
        return self.get_agreement(agreement_id)
