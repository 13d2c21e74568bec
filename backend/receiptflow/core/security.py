"""Authentication utilities.

Bearer tokens are JWTs.  When ``AUTH_JWKS_URL`` is configured they are
verified as RS256 against the identity provider's JWKS (fetched with
requests and cached in memory); otherwise they are verified as HS256
with ``SECRET_KEY``.  The ``sub`` claim is the account id.

If ``AUTH_JWT_AUDIENCE`` and/or ``AUTH_JWT_ISSUER`` are set the
corresponding claims are validated, otherwise that verification is
skipped.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from receiptflow.core.config import settings
from receiptflow.core.database import get_db
from receiptflow.services.subscription_service import SubscriptionService

DEV_ACCOUNT_ID = "dev_account"
DEV_ACCOUNT_EMAIL = "dev@example.com"

auth_scheme = HTTPBearer(auto_error=False)

# JWKS cache.  Cleared and refetched once when a token names an unknown kid.
_jwks: Optional[Dict] = None


@dataclass(frozen=True)
class AuthenticatedAccount:
    account_id: str
    email: Optional[str] = None


def get_jwks() -> Dict:
    """Fetch and cache the JWKS used to verify RS256 tokens."""
    global _jwks
    if _jwks is not None:
        return _jwks
    if not settings.AUTH_JWKS_URL:
        raise RuntimeError("AUTH_JWKS_URL is not configured")
    try:
        resp = requests.get(settings.AUTH_JWKS_URL, timeout=5)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise HTTPException(status_code=503, detail=f"Failed to fetch JWKS: {exc}") from exc
    if not isinstance(data, dict) or "keys" not in data:
        raise HTTPException(status_code=503, detail="Invalid JWKS payload")
    _jwks = data
    return data


def _signing_key(token: str) -> Dict:
    global _jwks
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token header: {exc}") from exc
    kid = header.get("kid")
    if not kid:
        raise HTTPException(status_code=401, detail="Invalid token: missing kid header")
    key = next((k for k in get_jwks().get("keys", []) if k.get("kid") == kid), None)
    if not key:
        # Key rotation: refetch once
        _jwks = None
        key = next((k for k in get_jwks().get("keys", []) if k.get("kid") == kid), None)
        if not key:
            raise HTTPException(status_code=401, detail="Unknown signing key (kid)")
    return key


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify ``token`` and return its claims.

    Raises:
        HTTPException: 401 when the token is malformed, expired or forged.
    """
    if settings.AUTH_JWKS_URL:
        key: Any = _signing_key(token)
        algorithms = ["RS256"]
    else:
        key = settings.SECRET_KEY
        algorithms = ["HS256"]
    decode_kwargs: Dict[str, Any] = {"algorithms": algorithms, "options": {}}
    if settings.AUTH_JWT_AUDIENCE:
        decode_kwargs["audience"] = settings.AUTH_JWT_AUDIENCE
    else:
        decode_kwargs["options"]["verify_aud"] = False
    if settings.AUTH_JWT_ISSUER:
        decode_kwargs["issuer"] = settings.AUTH_JWT_ISSUER
    try:
        return jwt.decode(token, key, **decode_kwargs)
    except JWTError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token: {exc}") from exc


def create_access_token(account_id: str, email: Optional[str] = None, expires_in: int = 3600) -> str:
    """Issue an HS256 token signed with ``SECRET_KEY`` (development and tests)."""
    now = dt.datetime.now(dt.timezone.utc)
    claims: Dict[str, Any] = {
        "sub": account_id,
        "iat": int(now.timestamp()),
        "exp": int((now + dt.timedelta(seconds=expires_in)).timestamp()),
    }
    if email:
        claims["email"] = email
    if settings.AUTH_JWT_AUDIENCE:
        claims["aud"] = settings.AUTH_JWT_AUDIENCE
    if settings.AUTH_JWT_ISSUER:
        claims["iss"] = settings.AUTH_JWT_ISSUER
    return jwt.encode(claims, settings.SECRET_KEY, algorithm="HS256")


async def get_current_account(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    db: AsyncSession = Depends(get_db),
) -> AuthenticatedAccount:
    """Resolve the authenticated account, creating its row on first sign-in.

    With ``DEV_AUTH_BYPASS`` a fixed development account is returned.
    """
    if settings.DEV_AUTH_BYPASS:
        principal = AuthenticatedAccount(DEV_ACCOUNT_ID, DEV_ACCOUNT_EMAIL)
    else:
        if credentials is None or not credentials.credentials:
            raise HTTPException(status_code=401, detail="Not authenticated")
        payload = decode_access_token(credentials.credentials)
        sub = payload.get("sub")
        if not sub:
            raise HTTPException(status_code=401, detail="Invalid token: no sub claim")
        principal = AuthenticatedAccount(str(sub), payload.get("email"))
    await SubscriptionService().ensure_account(db, principal.account_id, principal.email)
    request.state.account_id = principal.account_id
    return principal


__all__ = [
    "AuthenticatedAccount",
    "auth_scheme",
    "create_access_token",
    "decode_access_token",
    "get_current_account",
    "get_jwks",
]
