"""Bearer token issue and validation (HS256 JWT via PyJWT)."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta

import jwt
from billing_core.errors import AuthenticationFailure
from billing_core.models.roles import Role
from pydantic import BaseModel, SecretStr, ValidationError

logger = logging.getLogger(__name__)


class TokenClaims(BaseModel):
    """Validated claims carried by a bearer token."""

    sub: str
    tenant_id: str
    role: str
    jti: str
    iat: int | None = None
    exp: int


class TokenManager:
    """Sign and verify bearer tokens.

    Parameters
    ----------
    secret:
        Shared HMAC secret.
    algorithm:
        JWS algorithm; only HMAC algorithms are meaningful here.
    ttl_seconds:
        Default token lifetime.
    """

    def __init__(self, secret: SecretStr, *, algorithm: str = "HS256", ttl_seconds: int = 3600) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._ttl = timedelta(seconds=ttl_seconds)

    def issue_token(
        self,
        *,
        sub: str,
        tenant_id: str,
        role: Role,
        ttl: timedelta | None = None,
        now: datetime | None = None,
    ) -> str:
        issued_at = now or datetime.now(UTC)
        payload = {
            "sub": sub,
            "tenant_id": tenant_id,
            "role": role.claim,
            "jti": uuid.uuid4().hex,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + (ttl or self._ttl)).timestamp()),
        }
        return jwt.encode(payload, self._secret.get_secret_value(), algorithm=self._algorithm)

    def validate_token(self, token: str) -> TokenClaims:
        """Decode *token* and check its signature, expiry and required claims.

        Raises
        ------
        AuthenticationFailure
            For any malformed, expired or tampered token.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret.get_secret_value(),
                algorithms=[self._algorithm],
                options={"require": ["sub", "tenant_id", "role", "jti", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationFailure("Token has expired", error_code="token_expired")
        except jwt.InvalidTokenError as exc:
            raise AuthenticationFailure(f"Invalid token: {exc}", error_code="token_invalid")
        try:
            return TokenClaims(**payload)
        except ValidationError as exc:
            raise AuthenticationFailure(f"Malformed claims: {exc}", error_code="token_invalid")
