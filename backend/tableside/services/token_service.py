# Overview: Service-layer operations for table access tokens; encapsulates business logic and database work.

"""
Table Access Token Service

WHY: A QR scan or a staff action grants a device bearer access to exactly one
table for a bounded window. The token is the only proof of that grant.

SECURITY FEATURES:
- Cryptographically secure random tokens (secrets.token_urlsafe)
- Tokens hashed with SHA-256 before storage; plaintext only leaves via issue()
- Absolute expiry per token class (guest ~4h, operator ~8h)
- Issuing a new token overwrites the old one (implicit revocation)
- Constant-time hash comparison on validation
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import Table
from ..errors import NotFoundError, ValidationError
from tableside.time_utils import utcnow
from .concurrency import reload, run_with_retry


TOKEN_CLASS_GUEST = "guest"
TOKEN_CLASS_OPERATOR = "operator"

VALID_TOKEN_CLASSES = [TOKEN_CLASS_GUEST, TOKEN_CLASS_OPERATOR]

# Denial reasons reported to clients
REASON_MISSING_TOKEN = "missing_token"
REASON_TOKEN_MISMATCH = "token_mismatch"
REASON_TOKEN_EXPIRED = "token_expired"

REASON_MESSAGES = {
    REASON_MISSING_TOKEN: "Access token required. Scan the table QR code again.",
    REASON_TOKEN_MISMATCH: "Access token is not valid for this table.",
    REASON_TOKEN_EXPIRED: "Access token expired. Scan the table QR code again.",
}


@dataclass(frozen=True)
class TokenCheck:
    ok: bool
    reason: str | None = None
    expires_at: datetime | None = None

    @property
    def message(self) -> str | None:
        return REASON_MESSAGES.get(self.reason) if self.reason else None


def generate_token() -> str:
    """
    Generate an opaque, URL-safe token (32 bytes of entropy).

    URL-safe because it travels in the QR code access URL.
    """
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    """SHA-256 hex digest; tokens are high-entropy so a fast hash suffices."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_ttl(ttl_class: str) -> timedelta:
    if ttl_class == TOKEN_CLASS_GUEST:
        return timedelta(hours=current_app.config["GUEST_TOKEN_TTL_HOURS"])
    if ttl_class == TOKEN_CLASS_OPERATOR:
        return timedelta(hours=current_app.config["OPERATOR_TOKEN_TTL_HOURS"])
    raise ValidationError(
        f"Invalid token class: {ttl_class}. Must be one of {VALID_TOKEN_CLASSES}"
    )


def issue(table_id: int, ttl_class: str = TOKEN_CLASS_GUEST) -> tuple[str, datetime]:
    """
    Mint a token for a table and store its hash with an absolute expiry.

    Returns (plaintext_token, expires_at). Any previous token stops working.
    Table status is never touched here.
    """
    ttl = token_ttl(ttl_class)

    def _op():
        table = reload(Table, table_id)
        if table is None:
            raise NotFoundError(f"Table {table_id} not found")

        token = generate_token()
        now = utcnow()
        expires_at = now + ttl

        table.access_token_hash = hash_token(token)
        table.token_expires_at = expires_at
        table.token_class = ttl_class
        table.updated_at = now
        db.session.commit()

        return token, expires_at

    return run_with_retry(_op)


def validate(table: Table, presented_token: str | None) -> TokenCheck:
    """
    Check a presented token against the table's stored token.

    Order of checks: missing, mismatch, expired. Pure read.
    """
    if not presented_token:
        return TokenCheck(ok=False, reason=REASON_MISSING_TOKEN)

    stored_hash = table.access_token_hash
    if stored_hash is None or not hmac.compare_digest(stored_hash, hash_token(presented_token)):
        return TokenCheck(ok=False, reason=REASON_TOKEN_MISMATCH)

    if table.token_expires_at is None or utcnow() > table.token_expires_at:
        return TokenCheck(ok=False, reason=REASON_TOKEN_EXPIRED, expires_at=table.token_expires_at)

    return TokenCheck(ok=True, expires_at=table.token_expires_at)


def revoked_token_values() -> dict:
    """Column values that clear a table's token; merged into release updates."""
    return {
        "access_token_hash": None,
        "token_expires_at": None,
        "token_class": None,
    }


def revoke(table_id: int) -> bool:
    """
    Clear a table's token and expiry.

    Returns True if a token was cleared, False if the table had none.
    """
    def _op():
        table = reload(Table, table_id)
        if table is None:
            raise NotFoundError(f"Table {table_id} not found")
        if not table.has_token:
            return False

        for key, value in revoked_token_values().items():
            setattr(table, key, value)
        table.updated_at = utcnow()
        db.session.commit()
        return True

    return run_with_retry(_op)


def build_access_url(table_id: int, token: str) -> str:
    base = current_app.config.get("PUBLIC_BASE_URL", "").rstrip("/")
    return f"{base}/client/{table_id}?token={token}"
