"""
Confirmation and waitlist-offer tokens.

Format: {entity_id}_{issued_at_epoch_millis}_{signature}

The signature is an HMAC-SHA256 over the purpose and the first two
segments, keyed with TOKEN_SECRET, so tokens cannot be forged from an id.
A token is valid for TOKEN_TTL_HOURS after issuance and is additionally
bound to the issuance stamped on its entity (poll_sent_at for reminders,
offered_at for offers): issuing a new token supersedes the old one.
"""

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from .core.config import get_settings
from .core.errors import ExpiredTokenError, StateError, ValidationError

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class TokenPurpose(str, Enum):
    CONFIRM = "confirm"
    OFFER = "offer"


@dataclass(frozen=True)
class IssuedToken:
    value: str
    entity_id: uuid.UUID
    issued_at: datetime


def to_millis(moment: datetime) -> int:
    return (moment - EPOCH) // timedelta(milliseconds=1)


def from_millis(millis: int) -> datetime:
    return EPOCH + timedelta(milliseconds=millis)


def _sign(purpose: TokenPurpose, body: str) -> str:
    key = get_settings().token_secret.encode("utf-8")
    message = f"{purpose.value}:{body}".encode("utf-8")
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def issue_token(purpose: TokenPurpose, entity_id: uuid.UUID, now: datetime) -> IssuedToken:
    """
    Mint a token for the entity.

    issued_at is truncated to whole milliseconds; callers stamp exactly
    this value on the entity so the binding check compares equal.
    """
    millis = to_millis(now)
    body = f"{entity_id}_{millis}"
    return IssuedToken(
        value=f"{body}_{_sign(purpose, body)}",
        entity_id=entity_id,
        issued_at=from_millis(millis),
    )


def read_token(purpose: TokenPurpose, token: Optional[str], now: datetime) -> IssuedToken:
    """
    Verify format, signature and age.

    Raises:
        ValidationError: missing, malformed or wrongly signed token
        ExpiredTokenError: older than TOKEN_TTL_HOURS
    """
    if not token:
        raise ValidationError("Missing token")

    parts = token.split("_")
    if len(parts) != 3:
        raise ValidationError("Malformed token")
    entity_part, millis_part, signature = parts

    try:
        entity_id = uuid.UUID(entity_part)
        millis = int(millis_part)
    except ValueError:
        raise ValidationError("Malformed token")

    expected = _sign(purpose, f"{entity_part}_{millis_part}")
    if not hmac.compare_digest(expected, signature):
        logger.warning(f"Rejected {purpose.value} token with bad signature for {entity_id}")
        raise ValidationError("Invalid token")

    issued_at = from_millis(millis)
    ttl = timedelta(hours=get_settings().token_ttl_hours)
    if now - issued_at > ttl:
        if purpose == TokenPurpose.CONFIRM:
            guidance = "This confirmation link has expired. Please book a new appointment."
        else:
            guidance = "This offer link has expired. Please rejoin the waitlist."
        raise ExpiredTokenError(guidance, {"issued_at": issued_at.isoformat()})

    return IssuedToken(value=token, entity_id=entity_id, issued_at=issued_at)


def ensure_current(token: IssuedToken, stamped: Optional[datetime]) -> None:
    """Reject a token that is not the latest one issued for its entity."""
    if stamped is None or to_millis(stamped) != to_millis(token.issued_at):
        raise StateError("This link has been superseded or is no longer valid.")
