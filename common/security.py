import hashlib
import time, jwt
from typing import Dict, Optional
from common.settings import settings

ALGO = "HS256"

def mint_internal_jwt(aud: Optional[str] = None, claims: Optional[Dict] = None) -> str:
    """Token for operator/internal callers of the admin endpoints."""
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "aud": aud or settings.internal_audience,
        "iat": now,
        "exp": now + settings.internal_jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    options = {"require": ["exp", "iat", "iss"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        options=options,
        issuer=settings.jwt_issuer,
    )

def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
