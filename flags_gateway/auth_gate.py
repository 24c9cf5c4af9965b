"""Request-level admission for the evaluation endpoints.

States: UNAUTHENTICATED -> USER_CHECKED -> AGENT_CHECKED -> ADMITTED | DEGRADED

- Dashboard user headers present: the subject is looked up in the identity
  provider. A miss or a provider failure does not reject the request; the
  gate goes on to the agent check.
- Agent credentials present: the resolved (project, agent) must exist, and
  when an environment is named the agent must own it.
- Credentials were presented and none of them checked out: DEGRADED. The
  handler never runs and the caller gets the "slow down, no flags" payload
  with a 200 status.
- No credentials at all: ADMITTED. The handler applies its own request-shape
  rule (OFREP answers 400, legacy answers with the unscoped payload).
- Development mode admits everything.

Identity provider and store failures count as a failed check, never as an
error response.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Mapping, Optional

import anyio
from fastapi.responses import JSONResponse

from .credentials import CredentialResolver, UserCredentials
from .errors import UpstreamError
from .identity import IdentityProvider
from .models import Scope
from .responses import degraded_response
from .store import FlagStore, QueryCanceled, QueryContext

logger = logging.getLogger("flags_gateway.auth_gate")

HEADER_TIMESTAMP = "x-flags-timestamp"


class GateState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    USER_CHECKED = "user_checked"
    AGENT_CHECKED = "agent_checked"
    ADMITTED = "admitted"
    DEGRADED = "degraded"


@dataclass
class GateDecision:
    state: GateState
    user: Optional[UserCredentials] = None
    scope: Scope = Scope()
    trail: List[GateState] = field(default_factory=list)

    @property
    def admitted(self) -> bool:
        return self.state is GateState.ADMITTED


class AuthGate:
    def __init__(
        self,
        resolver: CredentialResolver,
        store: FlagStore,
        identity: IdentityProvider,
        *,
        development: bool = False,
        query_timeout_seconds: Optional[float] = None,
    ):
        self.resolver = resolver
        self.store = store
        self.identity = identity
        self.development = development
        self.query_timeout_seconds = query_timeout_seconds

    def check_user(self, headers: Mapping[str, str]) -> Optional[UserCredentials]:
        """The dashboard user, if the headers name one the provider knows."""
        user = self.resolver.resolve_user(headers)
        if user is None:
            return None
        if user.development:
            return user
        try:
            found = self.identity.get_user_by_external_id(user.subject)
        except UpstreamError as e:
            logger.warning("identity provider lookup failed: %s", e.cause or e)
            return None
        if not found:
            logger.info("unknown user subject presented")
            return None
        return user

    def check_agent(self, headers: Mapping[str, str], ctx: Optional[QueryContext] = None) -> Optional[Scope]:
        scope = self.resolver.resolve(headers)
        if not scope.is_complete():
            return None
        try:
            exists = self.store.agent_exists(scope.project_id, scope.agent_id, scope.environment_id, ctx)
        except UpstreamError as e:
            logger.error("agent check failed: %s", e.cause or e)
            return None
        except QueryCanceled:
            return None
        return scope if exists else None

    def decide(self, headers: Mapping[str, str]) -> GateDecision:
        trail = [GateState.UNAUTHENTICATED]
        if self.development:
            trail.append(GateState.ADMITTED)
            return GateDecision(GateState.ADMITTED, user=self.resolver.resolve_user(headers), trail=trail)

        presented = False
        if self.resolver.resolve_user(headers) is not None:
            presented = True
            user = self.check_user(headers)
            trail.append(GateState.USER_CHECKED)
            if user is not None:
                trail.append(GateState.ADMITTED)
                return GateDecision(GateState.ADMITTED, user=user, trail=trail)

        if self.resolver.presented(headers):
            presented = True
            scope = self.check_agent(headers, QueryContext.with_timeout(self.query_timeout_seconds))
            trail.append(GateState.AGENT_CHECKED)
            if scope is not None:
                trail.append(GateState.ADMITTED)
                return GateDecision(GateState.ADMITTED, scope=scope, trail=trail)

        if presented:
            trail.append(GateState.DEGRADED)
            return GateDecision(GateState.DEGRADED, trail=trail)
        trail.append(GateState.ADMITTED)
        return GateDecision(GateState.ADMITTED, trail=trail)


def gated_path(path: str) -> bool:
    return path == "/flags" or path.startswith("/ofrep/")


def install_auth_gate(app, gate: AuthGate, degraded_interval_seconds: int = 900) -> None:
    """Run the gate in front of the evaluation routes."""

    @app.middleware("http")
    async def _auth_gate(request, call_next):
        if not gated_path(request.url.path):
            return await call_next(request)
        decision = await anyio.to_thread.run_sync(gate.decide, request.headers)
        if not decision.admitted:
            logger.warning("degraded %s %s (credentials did not validate)", request.method, request.url.path)
            return JSONResponse(
                status_code=200,
                content=degraded_response(degraded_interval_seconds),
                headers={HEADER_TIMESTAMP: str(int(time.time()))},
            )
        return await call_next(request)
