import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

import jwt
from jwt import InvalidTokenError, PyJWKClient, PyJWKClientError
from django.conf import settings
from rest_framework.authentication import BaseAuthentication
from rest_framework.exceptions import AuthenticationFailed

logger = logging.getLogger(__name__)


@dataclass
class Principal:
    user_id: Optional[str]
    username: Optional[str]
    roles: list[str]
    company_id: Optional[int] = None
    permissions: list[str] = field(default_factory=list)
    is_authenticated: bool = True


_JWK_CLIENTS: dict[str, PyJWKClient] = {}


def _jwk_client(jwks_url: str) -> PyJWKClient:
    # PyJWKClient caches fetched signing keys per instance.
    client = _JWK_CLIENTS.get(jwks_url)
    if client is None:
        client = _JWK_CLIENTS[jwks_url] = PyJWKClient(jwks_url)
    return client


def _decode_options() -> dict:
    decode_kwargs = {
        "options": {
            "verify_aud": bool(settings.AUTH_AUDIENCE),
            "verify_iss": bool(settings.AUTH_ISSUER),
        }
    }
    if settings.AUTH_ISSUER:
        decode_kwargs["issuer"] = settings.AUTH_ISSUER
    if settings.AUTH_AUDIENCE:
        decode_kwargs["audience"] = settings.AUTH_AUDIENCE
    return decode_kwargs


def _verify_jwt_with_jwks(token: str, jwks_url: str) -> dict:
    if not jwks_url:
        raise AuthenticationFailed("JWKS URL is not configured.")
    try:
        algorithm = jwt.get_unverified_header(token).get("alg")
        if not algorithm or algorithm.lower() == "none":
            raise AuthenticationFailed("Bearer token has no signing algorithm.")
        signing_key = _jwk_client(jwks_url).get_signing_key_from_jwt(token)
        claims = jwt.decode(token, signing_key.key, algorithms=[algorithm], **_decode_options())
    except AuthenticationFailed:
        raise
    except (PyJWKClientError, InvalidTokenError, ValueError) as exc:
        logger.warning("Bearer token rejected: %s", exc)
        raise AuthenticationFailed("Invalid bearer token.") from exc
    if not isinstance(claims, dict):
        raise AuthenticationFailed("Bearer token claims are not an object.")
    return claims


def _parse_roles(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(role) for role in value]
    if isinstance(value, str):
        if "," in value:
            return [role.strip() for role in value.split(",") if role.strip()]
        return [value]
    return [str(value)]


def _parse_company_id(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise AuthenticationFailed("Invalid company claim.")


class GarageAuthentication(BaseAuthentication):
    """
    Resolves the acting principal: a settings-driven dev principal, or the
    claims of a bearer JWT verified against the configured JWKS.
    """

    def authenticate(self, request) -> Optional[Tuple[Principal, None]]:
        if settings.DEV_AUTH_ENABLED:
            principal = Principal(
                user_id=str(settings.DEV_AUTH_USER_ID),
                username=str(settings.DEV_AUTH_USER_ID),
                roles=list(settings.DEV_AUTH_ROLES),
                company_id=settings.DEV_AUTH_COMPANY_ID,
                permissions=list(settings.DEV_AUTH_PERMISSIONS),
            )
            return principal, None

        if not settings.AUTH_ENABLED:
            return None

        auth_header = request.META.get("HTTP_AUTHORIZATION", "")
        if not auth_header.startswith("Bearer "):
            raise AuthenticationFailed("Missing bearer token.")

        token = auth_header.replace("Bearer ", "", 1).strip()
        if not token:
            raise AuthenticationFailed("Missing bearer token.")

        payload = _verify_jwt_with_jwks(token, settings.AUTH_JWKS_URL)

        user_id = payload.get(settings.AUTH_USER_ID_CLAIM) if settings.AUTH_USER_ID_CLAIM else None
        username = payload.get(settings.AUTH_USERNAME_CLAIM) if settings.AUTH_USERNAME_CLAIM else None
        roles = _parse_roles(payload.get(settings.AUTH_ROLES_CLAIM)) if settings.AUTH_ROLES_CLAIM else []
        company_id = (
            _parse_company_id(payload.get(settings.AUTH_COMPANY_CLAIM))
            if settings.AUTH_COMPANY_CLAIM
            else None
        )

        principal = Principal(
            user_id=str(user_id) if user_id is not None else None,
            username=str(username) if username is not None else None,
            roles=roles,
            company_id=company_id,
        )
        return principal, None

    def authenticate_header(self, request) -> str:
        return "Bearer"
