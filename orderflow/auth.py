# orderflow/auth.py
import hashlib
import hmac
from datetime import timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderflow.errors import AuthenticationError, PersistenceError
from orderflow.models import BuyerSession, now_utc

SIGNATURE_HEADER = "X-Webhook-Signature"


class SessionAuthenticator:
    """Resolves an ``Authorization: Bearer <token>`` header to a buyer id."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def buyer_for(self, authorization: Optional[str]) -> str:
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("Authentication required")
        token = authorization.split(" ", 1)[1].strip()
        if not token:
            raise AuthenticationError("Authentication required")

        try:
            with self._session_factory() as db:
                session = db.get(BuyerSession, token)
                if session is None:
                    raise AuthenticationError("Authentication required")
                expires_at = session.expires_at
                buyer_id = session.buyer_id
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to read buyer session") from e

        if expires_at is not None:
            # SQLite hands back naive datetimes
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= now_utc():
                raise AuthenticationError("Session expired")
        return buyer_id


def sign_webhook_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> None:
    """No-op without a secret: the gateway lookup is then the only check on webhook callers."""
    if not secret:
        return
    if not signature:
        raise AuthenticationError(f"Missing {SIGNATURE_HEADER} header")
    if not hmac.compare_digest(sign_webhook_body(secret, body), signature.strip().lower()):
        raise AuthenticationError("Invalid webhook signature")
