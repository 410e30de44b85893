import logging
import time
from typing import Optional

import requests
from jose import JWTError, jwt

from interview_credits.core.config import settings
from interview_credits.core.exceptions import AuthError, StoreUnavailableError

logger = logging.getLogger(__name__)

# Simple JWKS cache
_JWKS_CACHE: dict | None = None
_JWKS_TS: float | None = None
_JWKS_TTL = 3600.0  # seconds


def _get_jwks() -> dict:
    global _JWKS_CACHE, _JWKS_TS
    now = time.time()
    if _JWKS_CACHE and _JWKS_TS and (now - _JWKS_TS) < _JWKS_TTL:
        return _JWKS_CACHE
    jwks_url = settings.supabase_jwks_url
    if not jwks_url:
        raise AuthError("Token verification not configured (SUPABASE_JWKS_URL, SUPABASE_PROJECT_URL or JWT_SECRET)")
    try:
        resp = requests.get(jwks_url, timeout=5)
        resp.raise_for_status()
        _JWKS_CACHE = resp.json()
        _JWKS_TS = now
        return _JWKS_CACHE
    except requests.RequestException as e:
        logger.warning("Failed to fetch JWKS from %s: %s", jwks_url, e)
        raise StoreUnavailableError(f"Failed to fetch JWKS: {e}")


def _issuer() -> Optional[str]:
    if settings.supabase_project_url:
        return settings.supabase_project_url.rstrip("/") + "/auth/v1"
    return None


def _verify_rs256(token: str, header: dict) -> dict:
    keys = _get_jwks().get("keys", [])
    if not keys:
        raise AuthError("JWKS keys not available")
    kid = header.get("kid")
    key = next((k for k in keys if k.get("kid") == kid), keys[0])
    return jwt.decode(token, key, algorithms=["RS256"], issuer=_issuer(), options={"verify_aud": False})


def _verify_hs256(token: str) -> dict:
    return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"], options={"verify_aud": False})


def decode_token(token: str) -> dict:
    """Verify a bearer token and return its claims.

    HS256 tokens are checked against JWT_SECRET, everything else against the
    Supabase JWKS. With ALLOW_UNVERIFIED_TOKENS set, a token that fails
    verification is still accepted for its claims (local development only).
    """
    try:
        header = jwt.get_unverified_header(token)
    except JWTError:
        raise AuthError("Invalid token header")

    try:
        if header.get("alg") == "HS256":
            if not settings.jwt_secret:
                raise AuthError("HS256 tokens are not accepted (JWT_SECRET not set)")
            return _verify_hs256(token)
        return _verify_rs256(token, header)
    except (JWTError, AuthError, StoreUnavailableError) as e:
        if not settings.allow_unverified_tokens:
            if isinstance(e, JWTError):
                raise AuthError(f"Token verification failed: {e}")
            raise
        logger.warning("Accepting unverified token claims: %s", e)
        try:
            return jwt.get_unverified_claims(token)
        except JWTError:
            raise AuthError("Invalid token")


def verify_caller(authorization: Optional[str]) -> str:
    """Resolve an `Authorization: Bearer <token>` header to an account id."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthError("Missing or invalid Authorization header")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise AuthError("Missing bearer token")

    claims = decode_token(token)
    account_id = claims.get("sub") or claims.get("user_id")
    if not account_id:
        raise AuthError("Invalid token: account id not found")
    return str(account_id)
