"""Email/password accounts and bearer session tokens."""

from __future__ import annotations

import logging
import re
from threading import RLock
from typing import Callable, List, Optional, Tuple

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .database import db_session
from .errors import AuthError, PersistenceError, ValidationFailed
from .models import User
from .records import UserRecord
from .token_utils import create_token, has_live_token, hash_password, revoke_token, verify_password, verify_token

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password."
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_BYTES = 72

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

AuthCallback = Callable[[str, Optional[UserRecord]], None]

bearer_scheme = HTTPBearer(auto_error=False)


def _user_record(user: User) -> UserRecord:
    return UserRecord(id=user.id, email=user.email, created_at=user.created_at)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        token_ttl_hours: Optional[int] = None,
        token_secret: Optional[str] = None,
        allow_registration: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._ttl_hours = token_ttl_hours
        self._secret = token_secret
        self.allow_registration = allow_registration
        self._lock = RLock()
        self._listeners: List[AuthCallback] = []

    def register(self, email: str, password: str) -> UserRecord:
        if not self.allow_registration:
            raise AuthError("Registration is disabled.")
        address = normalize_email(email)
        if not _EMAIL_PATTERN.match(address):
            raise ValidationFailed("Please enter a valid email address.")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationFailed(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long.")
        try:
            with db_session(self._session_factory) as session:
                if session.query(User).filter(User.email == address).one_or_none():
                    raise ValidationFailed("An account with this email already exists.")
                user = User(email=address, password_hash=hash_password(password))
                session.add(user)
                session.flush()
                record = _user_record(user)
        except IntegrityError as exc:
            raise ValidationFailed("An account with this email already exists.") from exc
        except SQLAlchemyError as exc:
            logger.error("Could not register %s: %s", address, exc)
            raise PersistenceError("Registration failed. Please try again.") from exc
        logger.info("Registered user %s", record.id)
        return record

    def sign_in(self, email: str, password: str) -> Tuple[UserRecord, str]:
        address = normalize_email(email)
        with db_session(self._session_factory) as session:
            user = session.query(User).filter(User.email == address).one_or_none()
            if user is None or not verify_password(password or "", user.password_hash):
                logger.info("Rejected sign-in for %s", address or "<empty>")
                raise AuthError(INVALID_CREDENTIALS)
            _, token_value = create_token(session, user.id, self._ttl_hours, self._secret)
            record = _user_record(user)
        self._emit(record.id, record)
        return record, token_value

    def sign_out(self, token_value: str) -> Optional[UserRecord]:
        with db_session(self._session_factory) as session:
            token = revoke_token(session, token_value, self._secret)
            if token is None:
                return None
            record = _user_record(token.user)
            still_signed_in = has_live_token(session, record.id)
        if not still_signed_in:
            self._emit(record.id, None)
        return record

    def resolve(self, token_value: Optional[str]) -> Optional[UserRecord]:
        if not token_value:
            return None
        with db_session(self._session_factory) as session:
            token = verify_token(session, token_value, self._secret)
            if token is None:
                return None
            return _user_record(token.user)

    def signed_in_users(self) -> List[UserRecord]:
        with db_session(self._session_factory) as session:
            users = session.query(User).order_by(User.created_at.asc()).all()
            return [_user_record(user) for user in users if has_live_token(session, user.id)]

    def on_auth_changed(self, callback: AuthCallback) -> Callable[[], None]:
        """Register ``callback``; it fires right away for every user with a live session."""
        with self._lock:
            self._listeners.append(callback)
        for user in self.signed_in_users():
            callback(user.id, user)

        def _remove() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _remove

    def _emit(self, user_id: str, user: Optional[UserRecord]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(user_id, user)
            except Exception:
                logger.exception("Auth listener failed for %s", user_id)


def get_auth(request: Request) -> AuthService:
    return request.app.state.auth


def bearer_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> str:
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise AuthError("Not authenticated")
    return credentials.credentials


def current_user(
    token: str = Depends(bearer_token),
    auth: AuthService = Depends(get_auth),
) -> UserRecord:
    user = auth.resolve(token)
    if user is None:
        raise AuthError("Session expired. Please sign in again.")
    return user


__all__ = ["AuthService", "INVALID_CREDENTIALS", "bearer_token", "current_user", "get_auth"]
