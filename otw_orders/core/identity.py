"""
Caller identity resolution from optional bearer tokens.

``authenticate`` never raises: it reports one of three outcomes and leaves
the policy for an invalid token to ``resolve``.
"""
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional, Union

import jwt
import structlog

from otw_orders.config import Settings, get_settings
from otw_orders.domain import AuthenticationRequiredError, PermissionDeniedError

logger = structlog.get_logger(__name__)

# Claims checked, in order, for the caller's identity id
IDENTITY_CLAIMS = ("sub", "uid", "user_id")


def token_roles(payload: Dict[str, Any]) -> FrozenSet[str]:
    """Roles from a ``roles`` list plus a space-separated OAuth ``scope``."""
    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    scope = payload.get("scope") or ""
    return frozenset(str(role) for role in roles) | frozenset(str(scope).split())


@dataclass(frozen=True)
class Authenticated:
    identity_id: str
    email: Optional[str] = None
    roles: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Guest:
    """No credential was presented."""


@dataclass(frozen=True)
class Invalid:
    """A credential was presented but could not be verified."""

    reason: str


AuthResult = Union[Authenticated, Guest, Invalid]


class IdentityResolver:
    """
    Verifies bearer tokens (PyJWT) and applies the invalid-token policy.

    With ``reject_invalid=False`` an invalid or expired token is logged and
    the caller proceeds as a guest; with ``reject_invalid=True`` it is a 401.
    """

    def __init__(
        self,
        secret_key: Optional[str],
        algorithm: str = "HS256",
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        reject_invalid: bool = False,
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.reject_invalid = reject_invalid

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "IdentityResolver":
        settings = settings or get_settings()
        return cls(
            secret_key=settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            reject_invalid=settings.reject_invalid_tokens,
        )

    @staticmethod
    def parse_authorization_header(header: Optional[str]) -> Optional[str]:
        """Extract the token from ``Bearer <token>``; anything else counts as absent."""
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(self, token: Optional[str]) -> AuthResult:
        if not token:
            return Guest()

        if not self.secret_key:
            logger.warning("token_verification_not_configured")
            return Invalid("token verification not configured")

        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            return Invalid("token has expired")
        except jwt.InvalidIssuerError:
            return Invalid("invalid token issuer")
        except jwt.InvalidTokenError as e:
            return Invalid(f"invalid token: {e}")

        for claim in IDENTITY_CLAIMS:
            identity_id = payload.get(claim)
            if isinstance(identity_id, str) and identity_id:
                return Authenticated(
                    identity_id=identity_id,
                    email=payload.get("email"),
                    roles=token_roles(payload),
                )

        return Invalid("token carries no identity claim")

    def resolve(self, token: Optional[str]) -> Optional[str]:
        """
        Resolve a token to an owner id, or None for a guest.

        Raises:
            AuthenticationRequiredError: If the token is invalid and the
                policy rejects invalid tokens
        """
        result = self.authenticate(token)

        if isinstance(result, Authenticated):
            structlog.contextvars.bind_contextvars(identity_id=result.identity_id)
            return result.identity_id

        if isinstance(result, Invalid):
            logger.warning(
                "bearer_token_rejected",
                reason=result.reason,
                policy="reject" if self.reject_invalid else "guest",
            )
            if self.reject_invalid:
                raise AuthenticationRequiredError("Invalid or expired token")

        return None

    def require(self, token: Optional[str]) -> str:
        """
        Resolve a token that must identify the caller.

        Raises:
            AuthenticationRequiredError: If no valid token was presented
        """
        result = self.authenticate(token)
        if isinstance(result, Authenticated):
            structlog.contextvars.bind_contextvars(identity_id=result.identity_id)
            return result.identity_id
        if isinstance(result, Invalid):
            logger.warning("bearer_token_rejected", reason=result.reason, policy="require")
        raise AuthenticationRequiredError()

    def require_role(self, token: Optional[str], role: str) -> str:
        """
        Resolve a token that must identify the caller and carry ``role``.

        Raises:
            AuthenticationRequiredError: If no valid token was presented
            PermissionDeniedError: If the token lacks the role
        """
        result = self.authenticate(token)
        if not isinstance(result, Authenticated):
            return self.require(token)

        structlog.contextvars.bind_contextvars(identity_id=result.identity_id)
        if role not in result.roles:
            logger.warning("role_required", identity_id=result.identity_id, role=role)
            raise PermissionDeniedError()
        return result.identity_id
