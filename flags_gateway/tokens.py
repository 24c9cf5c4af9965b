"""
Capability tokens (API keys) for flag evaluation.

A capability token is a self-contained HS256 JWT binding a project/agent and
optionally an environment. It substitutes for the discrete scope headers on
the OFREP surface (sent as X-API-Key).

Security Properties:
- HMAC-SHA256 signed with one process-wide symmetric key
- Only HS256 is accepted; any other `alg` (including `none` and asymmetric
  families) is rejected before claims are looked at
- Time bounded: iat/nbf = issuance time, exp = issuance + TTL (365 days)
- Stateless: no revocation list, no rotation tracking
- Every failure surfaces as the same TokenError ("invalid token")
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import jwt

from .config import GatewayConfig
from .errors import FLAGS_E_CONFIG, TokenError, flags_error
from .models import Scope

logger = logging.getLogger("flags_gateway.tokens")

ALGORITHM = "HS256"
DEFAULT_TTL = timedelta(days=365)

# Used only when no key is configured. Anyone who knows this string can mint
# tokens for any scope.
PLACEHOLDER_SIGNING_KEY = "flags-gg-jwt-signing-key-change-in-production"

_REQUIRED_CLAIMS = ["project_id", "agent_id", "iat", "nbf", "exp"]


class PlaceholderSigningKeyWarning(UserWarning):
    """Emitted when tokens are signed with the compiled-in placeholder key."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ApiKeyClaims:
    """Decoded claims of a capability token."""

    project_id: str
    agent_id: str
    environment_id: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    subject: str = ""
    issuer: str = ""

    @property
    def scope(self) -> Scope:
        return Scope(self.project_id, self.agent_id, self.environment_id)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "project_id": self.project_id,
            "agent_id": self.agent_id,
            "iat": int(self.issued_at.timestamp()),
            "nbf": int(self.not_before.timestamp()),
            "exp": int(self.expires_at.timestamp()),
        }
        if self.environment_id:
            d["environment_id"] = self.environment_id
        if self.subject:
            d["sub"] = self.subject
        if self.issuer:
            d["iss"] = self.issuer
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApiKeyClaims":
        project_id = data.get("project_id")
        agent_id = data.get("agent_id")
        environment_id = data.get("environment_id", "")
        subject = data.get("sub", "")
        issuer = data.get("iss", "")
        for value in (project_id, agent_id):
            if not isinstance(value, str) or not value:
                raise ValueError("scope claims must be non-empty strings")
        for value in (environment_id, subject, issuer):
            if not isinstance(value, str):
                raise ValueError("optional claims must be strings")
        for name in ("iat", "nbf", "exp"):
            if isinstance(data.get(name), bool) or not isinstance(data.get(name), (int, float)):
                raise ValueError(f"{name} must be numeric")
        return cls(
            project_id=project_id,
            agent_id=agent_id,
            environment_id=environment_id,
            issued_at=datetime.fromtimestamp(data["iat"], tz=timezone.utc),
            not_before=datetime.fromtimestamp(data["nbf"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(data["exp"], tz=timezone.utc),
            subject=subject,
            issuer=issuer,
        )


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: ApiKeyClaims

    @property
    def expires_at(self) -> datetime:
        return self.claims.expires_at


class CapabilityTokenService:
    """
    Issues and verifies capability tokens.

    The signing key is read-only after construction, so one instance can be
    shared by every request without locking. `clock` is injectable so expiry
    can be tested deterministically.
    """

    def __init__(
        self,
        signing_key: Optional[str] = None,
        *,
        issuer: str = "flags.gg",
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.using_placeholder_key = not signing_key
        if self.using_placeholder_key:
            logger.warning(
                "No capability token signing key configured (FLAGS_JWT_SIGNING_KEY); "
                "falling back to the built-in placeholder key. Tokens issued by this "
                "process can be forged by anyone. This mode is deprecated."
            )
            warnings.warn(
                "capability tokens are signed with the placeholder key",
                PlaceholderSigningKeyWarning,
                stacklevel=2,
            )
            signing_key = PLACEHOLDER_SIGNING_KEY
        self._key = signing_key
        self.issuer = issuer
        self.ttl = ttl
        self._clock = clock

    @classmethod
    def from_config(cls, config: GatewayConfig, clock: Callable[[], datetime] = _now_utc) -> "CapabilityTokenService":
        if not config.signing_key and config.is_production and not config.allow_placeholder_key:
            raise flags_error(
                FLAGS_E_CONFIG,
                "No capability token signing key configured. Set FLAGS_JWT_SIGNING_KEY "
                "(or FLAGS_JWT_SIGNING_KEY_FILE), or FLAGS_ALLOW_PLACEHOLDER_KEY=1 to "
                "accept the insecure placeholder key.",
                http_status=500,
            )
        return cls(
            config.signing_key,
            issuer=config.api_key_issuer,
            ttl=timedelta(days=config.api_key_ttl_days),
            clock=clock,
        )

    def issue(self, scope: Scope, subject: str = "") -> IssuedToken:
        """Mint a token for `scope`.

        project_id and agent_id are required; environment_id is optional and
        omitted from the claims when empty. The subject defaults to
        "<project>:<agent>".
        """
        if not scope.is_complete():
            raise ValueError("project_id and agent_id are required")
        # JWT numeric dates have one-second resolution.
        now = self._clock().replace(microsecond=0)
        claims = ApiKeyClaims(
            project_id=scope.project_id,
            agent_id=scope.agent_id,
            environment_id=scope.environment_id,
            issued_at=now,
            not_before=now,
            expires_at=now + self.ttl,
            subject=subject or f"{scope.project_id}:{scope.agent_id}",
            issuer=self.issuer,
        )
        token = jwt.encode(claims.to_dict(), self._key, algorithm=ALGORITHM)
        return IssuedToken(token=token, claims=claims)

    def verify(self, token: str) -> Tuple[Scope, str]:
        """Return (scope, subject) for a valid token, else raise TokenError."""
        claims = self.verify_claims(token)
        return claims.scope, claims.subject

    def verify_claims(self, token: str) -> ApiKeyClaims:
        try:
            payload = jwt.decode(
                token,
                self._key,
                algorithms=[ALGORITHM],
                options={
                    "require": _REQUIRED_CLAIMS,
                    # Temporal checks use the injected clock below.
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                },
            )
            claims = ApiKeyClaims.from_dict(payload)
        except (jwt.PyJWTError, ValueError, TypeError, OverflowError, OSError) as e:
            logger.debug("capability token rejected: %s", type(e).__name__)
            raise TokenError() from None

        now = self._clock()
        if now < claims.not_before or now >= claims.expires_at:
            logger.debug("capability token outside validity window")
            raise TokenError()
        return claims
