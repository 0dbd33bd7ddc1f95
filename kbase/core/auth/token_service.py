# kbase/core/auth/token_service.py
"""
Bearer token encoding and decoding.

Tokens are issued by the account service; this backend only verifies them.
``create_access_token`` exists for local tooling and tests.

Payload:
    sub:  public user id (User.uid)
    type: "access"
    exp:  expiry (UTC)
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from kbase.config import settings


def create_access_token(uid: str, expires_in: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": uid,
        "type": "access",
        "iat": now,
        "exp": now + (expires_in or timedelta(hours=1)),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a token.

    Raises:
        jwt.ExpiredSignatureError: Token has expired
        jwt.InvalidTokenError: Bad signature or malformed token
    """
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
