from __future__ import annotations

import base64
import datetime as dt
import hashlib
import hmac
import os
from typing import Optional, Tuple

import bcrypt
from sqlalchemy.orm import Session

from .config import settings
from .models import AuthToken

PASSWORD_ROUNDS = 12


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _ensure_aware(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def generate_token_value() -> str:
    raw = os.urandom(32)
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def token_hash(token: str, secret: Optional[str] = None) -> str:
    key = (secret if secret is not None else settings.token_secret).encode()
    digest = hmac.new(key, msg=token.encode(), digestmod=hashlib.sha256)
    return digest.hexdigest()


def hash_password(password: str, rounds: int = PASSWORD_ROUNDS) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds)).decode("utf-8")


def verify_password(password: str, encoded: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), encoded.encode("utf-8"))
    except ValueError:
        return False


def create_token(db: Session, user_id: str, ttl_hours: Optional[int], secret: Optional[str] = None) -> Tuple[AuthToken, str]:
    token_value = generate_token_value()
    expires_at = None
    if ttl_hours:
        expires_at = _now() + dt.timedelta(hours=ttl_hours)
    token = AuthToken(user_id=user_id, token_hash=token_hash(token_value, secret), expires_at=expires_at)
    db.add(token)
    db.flush()
    return token, token_value


def verify_token(db: Session, token_value: str, secret: Optional[str] = None) -> Optional[AuthToken]:
    hashed = token_hash(token_value, secret)
    token = db.query(AuthToken).filter(AuthToken.token_hash == hashed).one_or_none()
    if not token:
        return None
    if token.revoked_at is not None:
        return None
    expires_at = _ensure_aware(token.expires_at)
    if expires_at and expires_at < _now():
        return None
    token.last_used_at = _now()
    db.flush()
    return token


def revoke_token(db: Session, token_value: str, secret: Optional[str] = None) -> Optional[AuthToken]:
    hashed = token_hash(token_value, secret)
    token = db.query(AuthToken).filter(AuthToken.token_hash == hashed).one_or_none()
    if not token or token.revoked_at is not None:
        return None
    token.revoked_at = _now()
    db.flush()
    return token


def has_live_token(db: Session, user_id: str) -> bool:
    now = _now()
    for token in db.query(AuthToken).filter(AuthToken.user_id == user_id, AuthToken.revoked_at.is_(None)).all():
        expires_at = _ensure_aware(token.expires_at)
        if expires_at is None or expires_at >= now:
            return True
    return False
