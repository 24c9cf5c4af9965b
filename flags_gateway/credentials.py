"""Caller credential resolution.

Two kinds of caller reach the evaluation endpoints:

- Agents (embedded SDKs). Their scope comes from an ordered list of
  strategies. The first is the capability token in `X-API-Key`; when it
  verifies, its claims are authoritative and scope headers are ignored. The
  second is the discrete headers `x-project-id` (legacy alias
  `x-company-id`), `x-agent-id` and `x-environment-id`.
- Dashboard users, identified by `x-user-subject` + `x-user-access-token`.

Resolution never raises. An unusable credential degrades to an empty scope
and the caller decides what an empty scope means.

Invalid tokens: by default an X-API-Key that fails verification is treated
like an absent one and resolution falls through to the headers. With
`strict=True` an invalid token stops resolution with an empty scope instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Protocol, Sequence

from .errors import TokenError
from .models import Scope
from .tokens import CapabilityTokenService

logger = logging.getLogger("flags_gateway.credentials")

HEADER_API_KEY = "X-API-Key"
HEADER_PROJECT_ID = "x-project-id"
HEADER_COMPANY_ID = "x-company-id"
HEADER_AGENT_ID = "x-agent-id"
HEADER_ENVIRONMENT_ID = "x-environment-id"
HEADER_USER_SUBJECT = "x-user-subject"
HEADER_USER_ACCESS_TOKEN = "x-user-access-token"


class MatchStatus(str, Enum):
    MATCHED = "matched"
    NOT_PRESENT = "not_present"
    INVALID = "invalid"


@dataclass(frozen=True)
class CredentialMatch:
    status: MatchStatus
    scope: Scope = Scope()
    source: str = ""

    @classmethod
    def not_present(cls) -> "CredentialMatch":
        return cls(MatchStatus.NOT_PRESENT)


class CredentialStrategy(Protocol):
    name: str

    def match(self, headers: Mapping[str, str]) -> CredentialMatch:
        ...


def _header(headers: Mapping[str, str], *names: str) -> str:
    # Starlette headers are case-insensitive; plain dicts in tests may not be.
    for name in names:
        value = headers.get(name)
        if value is None:
            value = headers.get(name.lower())
        if value:
            return value.strip()
    return ""


class ApiKeyCredential:
    name = "api_key"

    def __init__(self, tokens: CapabilityTokenService):
        self.tokens = tokens

    def match(self, headers: Mapping[str, str]) -> CredentialMatch:
        raw = _header(headers, HEADER_API_KEY)
        if not raw:
            return CredentialMatch.not_present()
        try:
            scope, _subject = self.tokens.verify(raw)
        except TokenError:
            return CredentialMatch(MatchStatus.INVALID, source=self.name)
        return CredentialMatch(MatchStatus.MATCHED, scope=scope, source=self.name)


class HeaderCredential:
    name = "headers"

    def match(self, headers: Mapping[str, str]) -> CredentialMatch:
        scope = Scope(
            project_id=_header(headers, HEADER_PROJECT_ID, HEADER_COMPANY_ID),
            agent_id=_header(headers, HEADER_AGENT_ID),
            environment_id=_header(headers, HEADER_ENVIRONMENT_ID),
        )
        if not (scope.project_id or scope.agent_id or scope.environment_id):
            return CredentialMatch.not_present()
        return CredentialMatch(MatchStatus.MATCHED, scope=scope, source=self.name)


@dataclass(frozen=True)
class UserCredentials:
    subject: str
    access_token: str = ""
    development: bool = False


class CredentialResolver:
    """Normalizes request headers into an agent Scope or a user identity."""

    def __init__(
        self,
        strategies: Sequence[CredentialStrategy],
        *,
        strict: bool = False,
        development: bool = False,
        dev_user_subject: str = "",
    ):
        self.strategies = list(strategies)
        self.strict = strict
        self.development = development
        self.dev_user_subject = dev_user_subject

    @classmethod
    def default(cls, tokens: CapabilityTokenService, **kwargs) -> "CredentialResolver":
        return cls([ApiKeyCredential(tokens), HeaderCredential()], **kwargs)

    def resolve_match(self, headers: Mapping[str, str]) -> CredentialMatch:
        for strategy in self.strategies:
            m = strategy.match(headers)
            if m.status is MatchStatus.MATCHED:
                return m
            if m.status is MatchStatus.INVALID:
                if self.strict:
                    logger.info("rejected invalid %s credential", strategy.name)
                    return m
                logger.debug("ignoring invalid %s credential, trying next strategy", strategy.name)
        return CredentialMatch.not_present()

    def resolve(self, headers: Mapping[str, str]) -> Scope:
        """(project, agent, environment) for the caller; empty strings if unknown."""
        return self.resolve_match(headers).scope

    def presented(self, headers: Mapping[str, str]) -> bool:
        """True if the request carries any agent credential at all."""
        return any(s.match(headers).status is not MatchStatus.NOT_PRESENT for s in self.strategies)

    def resolve_user(self, headers: Mapping[str, str]) -> Optional[UserCredentials]:
        """The dashboard user the request claims to be, if any.

        In development mode the access token is not checked and the configured
        development subject is substituted for whatever was sent.
        """
        subject = _header(headers, HEADER_USER_SUBJECT)
        access_token = _header(headers, HEADER_USER_ACCESS_TOKEN)
        if self.development:
            subject = self.dev_user_subject or subject
            if not subject:
                return None
            return UserCredentials(subject=subject, access_token=access_token, development=True)
        if not subject or not access_token:
            return None
        return UserCredentials(subject=subject, access_token=access_token)

