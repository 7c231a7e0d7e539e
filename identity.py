"""Accounts and sessions.

Passwords are hashed with Argon2id; sessions are HS256 access tokens. Signing
out records the token id as revoked until it would have expired anyway.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import jwt
from argon2 import PasswordHasher
from argon2 import exceptions as argon_exc
from jwt import InvalidTokenError

from config import Settings
from database import StorageBackend
from errors import (
    AuthError,
    EmailInUseError,
    InvalidCredentialsError,
    PermissionDeniedError,
    UserNotFoundError,
    ValidationError,
    WeakPasswordError,
)
from schemas import ROLES, Account, User, load_record

logger = logging.getLogger(__name__)

ISSUER = "sponsorconnect-api"

PASSWORD_HASHER = PasswordHasher()

_PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")
_NAME_RE = re.compile(r"^[\w\s\-'.&]+$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class Session:
    user_id: str
    email: str
    token: str
    token_id: str
    expires_at: int


def check_password_strength(password: str) -> None:
    if len(password or "") < 8 or not _PASSWORD_RE.match(password):
        raise WeakPasswordError()


class IdentityService:
    def __init__(self, store: StorageBackend, settings: Settings):
        self.store = store
        self.settings = settings

    def _account(self, email: str) -> Optional[Account]:
        docs = self.store.get_documents("account", {"email": email.strip().lower()}, limit=1)
        return load_record(Account, docs[0]) if docs else None

    def register(self, email: str, password: str, name: str, role: str, admin_key: Optional[str] = None) -> User:
        email = (email or "").strip().lower()
        name = (name or "").strip()
        if not email or not name or not password:
            raise ValidationError("Please fill in all fields")
        if not _EMAIL_RE.match(email):
            raise ValidationError("Please enter a valid email address")
        if len(name) > 100 or not _NAME_RE.match(name):
            raise ValidationError("Name contains invalid characters")
        if role not in ROLES:
            raise ValidationError("User type must be admin, club, or business")
        if role == "admin":
            if not self.settings.ADMIN_REGISTRATION_KEY or admin_key != self.settings.ADMIN_REGISTRATION_KEY:
                raise PermissionDeniedError("Invalid admin secret key")
        check_password_strength(password)
        if self._account(email) is not None:
            raise EmailInUseError()

        user = User(name=name, email=email, role=role, profile_completed=(role == "admin"))
        user.id = self.store.create_document("user", user)
        account = Account(email=email, password_hash=PASSWORD_HASHER.hash(password), user_id=user.id)
        self.store.create_document("account", account)
        logger.info("Registered %s user %s", role, user.id)
        return load_record(User, self.store.get_document("user", user.id))

    def sign_in(self, email: str, password: str) -> Session:
        account = self._account(email or "")
        if account is None:
            raise UserNotFoundError()
        try:
            PASSWORD_HASHER.verify(account.password_hash, password or "")
        except argon_exc.VerificationError:
            raise InvalidCredentialsError()
        except argon_exc.InvalidHashError:
            logger.error("Stored password hash for %s is invalid", account.user_id)
            raise InvalidCredentialsError()
        user = load_record(User, self.store.get_document("user", account.user_id))
        if user is None:
            raise UserNotFoundError()
        if not user.is_active:
            raise AuthError("This account has been deactivated")
        return self._issue(user)

    def _issue(self, user: User) -> Session:
        now = int(time.time())
        token_id = uuid.uuid4().hex
        expires_at = now + self.settings.TOKEN_TTL_SECONDS
        body = {"iss": ISSUER, "sub": user.id, "email": user.email, "jti": token_id, "iat": now, "exp": expires_at}
        token = jwt.encode(body, self.settings.SECRET_KEY, algorithm="HS256")
        return Session(user_id=user.id, email=user.email, token=token, token_id=token_id, expires_at=expires_at)

    def current_session(self, token: str) -> Session:
        try:
            payload = jwt.decode(
                token,
                self.settings.SECRET_KEY,
                algorithms=["HS256"],
                issuer=ISSUER,
                options={"require": ["exp", "iat", "iss", "sub", "jti"]},
            )
        except InvalidTokenError:
            raise AuthError("Session expired, please sign in again")
        if self.store.get_documents("revokedtoken", {"jti": payload["jti"]}, limit=1):
            raise AuthError("Session expired, please sign in again")
        return Session(
            user_id=payload["sub"],
            email=payload.get("email", ""),
            token=token,
            token_id=payload["jti"],
            expires_at=payload["exp"],
        )

    def sign_out(self, token: str) -> None:
        session = self.current_session(token)
        self.store.create_document("revokedtoken", {"jti": session.token_id, "expires_at": session.expires_at})
        logger.info("User %s signed out", session.user_id)

    def change_email(self, user_id: str, new_email: str) -> None:
        new_email = (new_email or "").strip().lower()
        if not _EMAIL_RE.match(new_email):
            raise ValidationError("Please enter a valid email address")
        docs = self.store.get_documents("account", {"user_id": user_id}, limit=1)
        if not docs:
            raise UserNotFoundError()
        if docs[0]["email"] == new_email:
            return
        if self._account(new_email) is not None:
            raise EmailInUseError()
        self.store.update_document("account", docs[0]["id"], {"email": new_email})
        self.store.update_document("user", user_id, {"email": new_email})
