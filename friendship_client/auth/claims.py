"""
Access token claims decoding.

Only the payload is read; signatures are never verified on the client, the
backend is the authority on whether a credential is acceptable.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Any
from jose import jwt, JWTError

from friendship_shared.models import Claims

logger = logging.getLogger(__name__)

_REGISTERED_CLAIMS = ('sub', 'id', 'iat', 'exp')


def _timestamp_to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def decode_claims(token: Optional[str]) -> Optional[Claims]:
    """
    Decode the claims of a three segment token without verifying it.

    Args:
        token: Encoded access token

    Returns:
        Decoded claims, or None if the token is not a well formed JWT with a
        JSON object payload
    """
    if not isinstance(token, str) or token.count('.') != 2:
        return None

    try:
        payload = jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.debug(f"Failed to decode token claims: {e}")
        return None

    subject = payload.get('sub', payload.get('id'))

    return Claims(
        subject=str(subject) if subject is not None else None,
        issued_at=_timestamp_to_datetime(payload.get('iat')),
        expires_at=_timestamp_to_datetime(payload.get('exp')),
        extra={k: v for k, v in payload.items() if k not in _REGISTERED_CLAIMS}
    )
