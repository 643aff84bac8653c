"""
Bearer token verification (OIDC, RS256)

Identity is issued upstream (Cognito or Auth0); this service only verifies
the token and reads three things from it:

  tenant_id   organization the caller acts for (scopes every org document)
  role        platform_admin | owner | admin | member | viewer
  sub/email   recorded as uploaded_by / replaced_by / created_by

Claim names differ per provider:
    Cognito: custom:tenant_id, custom:role, cognito:groups
    Auth0:   <namespace>/tenant_id, <namespace>/role

The issuer's JWKS is cached for an hour and force-refreshed once when a
token carries an unknown kid (key rotation).
"""

from __future__ import annotations

import logging
import time
from typing import Annotated
from uuid import UUID

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel

from app.core.config import settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=True)

VALID_ROLES = frozenset({"platform_admin", "owner", "admin", "member", "viewer"})


class TokenPayload(BaseModel):
    """Verified caller identity handed to route handlers."""
    sub:       str
    email:     str
    tenant_id: UUID
    role:      str
    exp:       int
    iss:       str

    @property
    def actor(self) -> str:
        """Value written to uploaded_by / replaced_by columns."""
        return self.email or self.sub

    @property
    def is_platform_admin(self) -> bool:
        return self.role == "platform_admin"


# ---------------------------------------------------------------------------
# JWKS
# ---------------------------------------------------------------------------

_JWKS_CACHE: dict[str, tuple[dict, float]] = {}
_JWKS_TTL   = 3600


async def _fetch_jwks(issuer: str) -> dict:
    now = time.monotonic()
    cached = _JWKS_CACHE.get(issuer)
    if cached and (now - cached[1]) < _JWKS_TTL:
        return cached[0]

    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(f"{issuer.rstrip('/')}/.well-known/jwks.json")
        resp.raise_for_status()
        jwks = resp.json()

    _JWKS_CACHE[issuer] = (jwks, now)
    logger.debug("JWKS refreshed | issuer=%s", issuer)
    return jwks


async def _get_signing_key(token: str):
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid token header") from exc

    kid = header.get("kid")
    issuer = settings.auth_issuer

    for attempt in range(2):
        if attempt == 1:
            _JWKS_CACHE.pop(issuer, None)
        jwks = await _fetch_jwks(issuer)
        for key_data in jwks.get("keys", []):
            if key_data.get("kid") == kid:
                return jwk.construct(key_data).public_key()

    raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Unable to find signing key for kid={kid}")


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------

def _extract_tenant_id(claims: dict) -> UUID:
    raw = (
        claims.get("custom:tenant_id")
        or claims.get(f"{settings.auth0_namespace}/tenant_id")
        or claims.get("tenant_id")
    )
    if not raw:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Token missing tenant_id claim")
    try:
        return UUID(str(raw))
    except ValueError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid tenant_id in token") from exc


def _extract_role(claims: dict) -> str:
    role = (
        claims.get("custom:role")
        or claims.get(f"{settings.auth0_namespace}/role")
        or claims.get("role")
    )
    if not role and claims.get("cognito:groups"):
        groups = claims["cognito:groups"]
        role = "platform_admin" if "platform_admin" in groups else groups[0]

    if role not in VALID_ROLES:
        logger.warning("Unknown role '%s' in token, defaulting to 'viewer'", role)
        role = "viewer"
    return role


def claims_to_payload(claims: dict) -> TokenPayload:
    return TokenPayload(
        sub=claims["sub"],
        email=claims.get("email", ""),
        tenant_id=_extract_tenant_id(claims),
        role=_extract_role(claims),
        exp=claims["exp"],
        iss=claims["iss"],
    )


async def verify_token(token: str) -> TokenPayload:
    signing_key = await _get_signing_key(token)
    try:
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
            options={"verify_exp": True},
        )
    except ExpiredSignatureError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Token has expired") from exc
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {exc}") from exc
    return claims_to_payload(claims)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> TokenPayload:
    return await verify_token(credentials.credentials)
