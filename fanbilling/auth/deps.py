from __future__ import annotations

import base64
import json
from functools import lru_cache
from typing import Any, Dict, List, Optional

import jwt
import requests
from fastapi import Request

from fanbilling.core.errors import Forbidden, Unauthorized
from fanbilling.core.settings import S

ROLE_FAN = "fan"
ROLE_ARTIST = "artist"
ROLES = (ROLE_FAN, ROLE_ARTIST)


def _cognito_enabled() -> bool:
    return bool(S.cognito_user_pool_id and S.cognito_app_client_id)


def _cognito_issuer() -> str:
    region = S.cognito_region or S.aws_region
    return f"https://cognito-idp.{region}.amazonaws.com/{S.cognito_user_pool_id}"


@lru_cache(maxsize=1)
def _cognito_jwks() -> Dict[str, Any]:
    url = f"{_cognito_issuer()}/.well-known/jwks.json"
    resp = requests.get(url, timeout=10)
    resp.raise_for_status()
    return resp.json()


def _resolve_cognito_key(kid: str) -> Dict[str, Any]:
    for key in _cognito_jwks().get("keys", []):
        if key.get("kid") == kid:
            return key
    raise Unauthorized("Unknown Cognito key id")


def _decode_cognito_token(token: str) -> Dict[str, Any]:
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise Unauthorized("Invalid token header") from exc

    key = _resolve_cognito_key(header.get("kid", ""))
    public_key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(key))
    try:
        payload = jwt.decode(
            token,
            public_key,
            algorithms=["RS256"],
            audience=S.cognito_app_client_id,
            issuer=_cognito_issuer(),
        )
    except jwt.ExpiredSignatureError as exc:
        raise Unauthorized("Token expired") from exc
    except jwt.PyJWTError as exc:
        raise Unauthorized("Invalid token") from exc

    expected_use = S.cognito_expected_token_use
    if expected_use and payload.get("token_use") != expected_use:
        raise Unauthorized("Unexpected token use")
    return payload


def _decode_unverified_claims(token: str) -> Dict[str, Any]:
    if token.count(".") != 2:
        return {}
    _, payload, _ = token.split(".", 2)
    if not payload:
        return {}
    padding = "=" * (-len(payload) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(payload + padding).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def extract_bearer_token(auth_header: Optional[str]) -> str:
    if not auth_header:
        raise Unauthorized("Missing Authorization header")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Invalid Authorization header")
    return token.strip()


def role_from_claims(claims: Dict[str, Any]) -> str:
    """Artists are marked by the Cognito group or a ``custom:role`` attribute; everyone else is a fan."""
    groups: List[str] = claims.get("cognito:groups") or []
    if S.cognito_artist_group in groups:
        return ROLE_ARTIST
    role = str(claims.get("custom:role") or "").lower()
    return role if role in ROLES else ROLE_FAN


def _principal(user_sub: str, role: str, email: Optional[str]) -> Dict[str, Any]:
    return {"user_sub": user_sub, "role": role, "email": email}


async def get_principal(request: Request) -> Dict[str, Any]:
    """Authenticated caller as ``{user_sub, role, email}``.

    With Cognito configured the bearer token is verified against the pool's JWKS.
    Dev fallback: ``X-User-Sub`` / ``X-User-Role`` / ``X-User-Email`` headers, or an
    unverified bearer token whose ``sub`` claim (or the raw token) names the user.
    """
    if _cognito_enabled():
        token = extract_bearer_token(request.headers.get("authorization"))
        claims = _decode_cognito_token(token)
        user_sub = claims.get("sub") or claims.get("cognito:username") or claims.get("username")
        if not user_sub:
            raise Unauthorized("Token missing subject")
        return _principal(str(user_sub), role_from_claims(claims), claims.get("email"))

    fallback_user = request.headers.get("x-user-sub")
    if fallback_user:
        role = (request.headers.get("x-user-role") or ROLE_FAN).lower()
        if role not in ROLES:
            raise Unauthorized("Unknown role")
        return _principal(fallback_user, role, request.headers.get("x-user-email"))

    token = extract_bearer_token(request.headers.get("authorization"))
    claims = _decode_unverified_claims(token)
    user_sub = claims.get("sub") if isinstance(claims.get("sub"), str) and claims["sub"].strip() else token
    return _principal(user_sub, role_from_claims(claims), claims.get("email"))


async def require_fan(request: Request) -> Dict[str, Any]:
    principal = await get_principal(request)
    if principal["role"] != ROLE_FAN:
        raise Forbidden("Fan access required")
    return principal


async def require_artist(request: Request) -> Dict[str, Any]:
    principal = await get_principal(request)
    if principal["role"] != ROLE_ARTIST:
        raise Forbidden("Artist access required")
    return principal
